from flask import Blueprint, Flask, current_app, request, jsonify
from flask_cors import CORS
import asyncio
import logging
import threading

from config import Config
from fincache import CacheConfig, CacheRefreshOptions, ConfigurationError, FinancialDataCache, get_db_stats
from fmp_client import FMPClient

logger = logging.getLogger(__name__)

api = Blueprint('cache_api', __name__)


class AsyncRunner:
    """Runs cache coroutines on one event loop in a background thread."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name='fincache-loop', daemon=True)
        self._thread.start()

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def run(self, coro, timeout: float = None):
        """Run a coroutine on the loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)


def build_cache() -> FinancialDataCache:
    """Construct the cache from environment configuration."""
    client = FMPClient(Config.FMP_API_KEY, Config.FMP_BASE_URL, Config.FMP_TIMEOUT)
    return FinancialDataCache(
        client.fetch_company_financials,
        config=CacheConfig.from_settings(Config),
        db_path=Config.CACHE_DB_PATH,
    )


def _cache() -> FinancialDataCache:
    return current_app.extensions['fincache']


def _run(coro):
    return current_app.extensions['fincache_runner'].run(coro)


def _is_true(value) -> bool:
    return str(value).lower() in ('1', 'true', 'yes')


@api.route('/api/cache/<user_id>/records/<symbol>', methods=['GET'])
def get_data(user_id, symbol):
    """Cached financials for one symbol, fetched if missing or stale"""
    options = CacheRefreshOptions(force_refresh=_is_true(request.args.get('force_refresh', 'false')))
    result = _run(_cache().get_data(user_id, symbol, options))
    if not result.success:
        return jsonify(result.to_dict()), 502
    return jsonify(result.to_dict())


@api.route('/api/cache/<user_id>', methods=['DELETE'])
@api.route('/api/cache/<user_id>/records/<symbol>', methods=['DELETE'])
def invalidate(user_id, symbol=None):
    """Remove one symbol, or every entry of the user"""
    success = _run(_cache().invalidate_cache(user_id, symbol))
    return jsonify({'success': success}), 200 if success else 500


@api.route('/api/cache/<user_id>/symbols', methods=['GET'])
def cached_symbols(user_id):
    symbols = _run(_cache().get_cached_symbols(user_id))
    return jsonify({'user_id': user_id, 'symbols': symbols})


@api.route('/api/cache/<user_id>/statistics', methods=['GET'])
def statistics(user_id):
    stats = _run(_cache().get_cache_statistics(user_id))
    return jsonify(stats.to_dict())


@api.route('/api/cache/<user_id>/preload', methods=['POST'])
def preload(user_id):
    """Fetch and store every listed symbol that is not already fresh"""
    data = request.get_json(silent=True) or {}
    symbols = data.get('symbols')
    if not isinstance(symbols, list) or not symbols:
        return jsonify({'error': 'At least one symbol is required'}), 400

    try:
        result = _run(_cache().preload_data(user_id, symbols))
    except Exception as e:
        return jsonify({'error': str(e)}), 500
    return jsonify(result.to_dict())


@api.route('/api/cache/<user_id>/refresh', methods=['POST'])
def refresh(user_id):
    """Start a background refresh of one symbol or of all stale symbols"""
    data = request.get_json(silent=True) or {}
    symbol = data.get('symbol')
    if symbol is not None and (not isinstance(symbol, str) or not symbol.strip()):
        return jsonify({'error': 'symbol must be a non-empty string'}), 400

    started = _run(_cache().schedule_background_refresh(user_id, symbol))
    if not started:
        return jsonify({
            'status': 'already_running',
            'message': 'A refresh for this key is already running'
        }), 202

    target = symbol.upper() if symbol else 'all stale symbols'
    return jsonify({
        'status': 'started',
        'message': f'Started refreshing {target} in background'
    }), 202


@api.route('/api/cache/config', methods=['GET'])
def get_config():
    return jsonify(_cache().get_configuration().to_dict())


@api.route('/api/cache/config', methods=['PATCH'])
def update_config():
    """Merge options into the live configuration (durations in milliseconds)"""
    changes = request.get_json(silent=True)
    if not isinstance(changes, dict) or not changes:
        return jsonify({'error': 'A JSON object of options is required'}), 400

    try:
        config = _run(_cache().update_configuration(**changes))
    except ConfigurationError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify(config.to_dict())


@api.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    try:
        database = get_db_stats(_cache().db_path)
    except Exception as e:
        logger.warning(f"Database stats unavailable: {e}")
        database = None
    return jsonify({'status': 'healthy', 'database': database})


def create_app(cache: FinancialDataCache = None, runner: AsyncRunner = None) -> Flask:
    app = Flask(__name__)
    CORS(app)

    app.extensions['fincache'] = cache or build_cache()
    app.extensions['fincache_runner'] = runner or AsyncRunner()
    app.register_blueprint(api)
    return app


if __name__ == '__main__':
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    create_app().run(debug=Config.DEBUG, port=5000)
