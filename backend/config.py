import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    FMP_API_KEY = os.getenv('FMP_API_KEY', '')
    FMP_BASE_URL = os.getenv('FMP_BASE_URL', 'https://financialmodelingprep.com/api/v3')
    FMP_TIMEOUT = float(os.getenv('FMP_TIMEOUT', '30'))

    DEBUG = os.getenv('DEBUG', 'True').lower() == 'true'
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    # Durable store location (defaults to backend/data/financial_cache.db)
    CACHE_DB_PATH = os.getenv('CACHE_DB_PATH') or None

    # Freshness
    CACHE_DEFAULT_TTL_DAYS = int(os.getenv('CACHE_DEFAULT_TTL_DAYS', '90'))
    CACHE_MAX_AGE_DAYS = int(os.getenv('CACHE_MAX_AGE_DAYS', '180'))
    CACHE_ADAPTIVE_TTL = os.getenv('CACHE_ADAPTIVE_TTL', 'False').lower() == 'true'

    # Local store capacity per user, in bytes (50 MB)
    CACHE_MAX_SIZE_BYTES = int(os.getenv('CACHE_MAX_SIZE_BYTES', str(50 * 1024 * 1024)))

    # Backends
    CACHE_USE_LOCAL = os.getenv('CACHE_USE_LOCAL', 'True').lower() == 'true'
    CACHE_USE_REMOTE = os.getenv('CACHE_USE_REMOTE', 'True').lower() == 'true'

    CACHE_ENABLE_COMPRESSION = os.getenv('CACHE_ENABLE_COMPRESSION', 'False').lower() == 'true'
    CACHE_BACKGROUND_REFRESH = os.getenv('CACHE_BACKGROUND_REFRESH', 'True').lower() == 'true'
    CACHE_COALESCE_FETCHES = os.getenv('CACHE_COALESCE_FETCHES', 'False').lower() == 'true'
