import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    SECRET_KEY = os.environ.get('SESSION_SECRET') or os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    GOOGLE_APPLICATION_CREDENTIALS = os.environ.get('GOOGLE_APPLICATION_CREDENTIALS', './firebase-service-account.json')
    FIREBASE_PROJECT_ID = os.environ.get('FIREBASE_PROJECT_ID', '')

    # Directory holding one JSON local store per user
    QUIZSYNC_LOCAL_STORE = os.environ.get('QUIZSYNC_LOCAL_STORE', './instance/local_store')
    QUIZSYNC_DEVICE_ID = os.environ.get('QUIZSYNC_DEVICE_ID', '')
    QUIZSYNC_BATCH_SIZE = _env_int('QUIZSYNC_BATCH_SIZE', 500)
    QUIZSYNC_MAX_WORKERS = _env_int('QUIZSYNC_MAX_WORKERS', 4)

    QBANK_BASE_URL = os.environ.get(
        'QBANK_BASE_URL',
        'https://qbank-api.collegeboard.org/msreportingquestionbank-prod/questionbank',
    )
    SAIC_BASE_URL = os.environ.get('SAIC_BASE_URL', 'https://saic.collegeboard.org/disclosed')
    QUESTION_LOOKUP_TIMEOUT = _env_int('QUESTION_LOOKUP_TIMEOUT', 30)
    # 'test:domain' pairs; when set, mistake restoration waits for the catalog
    QUESTION_CATALOG_DOMAINS = os.environ.get('QUESTION_CATALOG_DOMAINS', '')

    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '')
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'threading')
    LOG_LEVEL = os.environ.get('LOG_LEVEL')

    # Test hooks: callables replacing Firestore-backed engines and ID token checks
    QUIZSYNC_ENGINE_FACTORY = None
    QUIZSYNC_TOKEN_VERIFIER = None
