import atexit
import threading
from functools import partial
from pathlib import Path

import structlog
from flask import Flask, current_app
from flask_socketio import SocketIO

from config import Config

socketio = SocketIO()
logger = structlog.get_logger(__name__)


class EngineRegistry:
    """One SyncEngine per signed-in user, built lazily."""

    def __init__(self, factory, on_created=None):
        self._factory = factory
        self._on_created = on_created
        self._engines = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._engines)

    def get(self, uid):
        with self._lock:
            engine = self._engines.get(uid)
            if engine is None:
                engine = self._factory(uid)
                if self._on_created is not None:
                    self._on_created(uid, engine)
                self._engines[uid] = engine
                logger.debug('sync engine created', uid=uid)
            return engine

    def close_all(self):
        """Shut down every engine's worker pool. Runs at interpreter exit."""
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            engine.close()
        if engines:
            logger.info('sync engines closed', count=len(engines))


def default_engine_factory(app_config):
    """Engines backed by Firestore and a JSON file per user."""
    from quizsync.firebase_init import get_db
    from quizsync.local_store import JsonFileLocalStore
    from quizsync.question_lookup import HttpQuestionLookup, parse_catalog_domains
    from quizsync.remote_store import FirestoreRemoteStore
    from quizsync.sync_engine import SyncEngine

    domains = parse_catalog_domains(app_config.get('QUESTION_CATALOG_DOMAINS'))
    lookup = HttpQuestionLookup(
        qbank_base_url=app_config['QBANK_BASE_URL'],
        saic_base_url=app_config['SAIC_BASE_URL'],
        timeout=app_config['QUESTION_LOOKUP_TIMEOUT'],
        catalog_required=bool(domains),
    )
    if domains:
        # Restores started before this finishes defer their mistakes
        socketio.start_background_task(lookup.load_domains, domains)
    store_dir = Path(app_config['QUIZSYNC_LOCAL_STORE'])

    def factory(uid):
        return SyncEngine(
            remote=FirestoreRemoteStore(get_db(), uid, batch_size=app_config['QUIZSYNC_BATCH_SIZE']),
            local=JsonFileLocalStore(store_dir / f'{uid}.json'),
            lookup=lookup,
            device_id=app_config.get('QUIZSYNC_DEVICE_ID') or None,
            max_workers=app_config['QUIZSYNC_MAX_WORKERS'],
        )

    return factory


def get_engine(uid):
    return current_app.extensions['quizsync_engines'].get(uid)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    from quizsync.logging_config import configure_logging
    configure_logging(app.config.get('LOG_LEVEL'))

    # CORS origins
    allowed_origins = []
    cors_origins = app.config.get('CORS_ALLOWED_ORIGINS', '')
    if cors_origins:
        for origin in cors_origins.split(','):
            origin = origin.strip()
            if origin:
                allowed_origins.append(origin)

    # Handlers must be registered before init_app so every app's server gets them
    from quizsync import events

    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins if allowed_origins else None,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'threading'),
    )

    factory = app.config.get('QUIZSYNC_ENGINE_FACTORY')
    if factory is None:
        # Initialize Firebase
        from quizsync.firebase_init import init_firebase
        init_firebase(app.config)
        factory = default_engine_factory(app.config)

    def subscribe_restoration(uid, engine):
        engine.restoration.subscribe(partial(events.broadcast_restoration_state, uid))

    registry = EngineRegistry(factory, on_created=subscribe_restoration)
    app.extensions['quizsync_engines'] = registry
    atexit.register(registry.close_all)

    # Register blueprints
    from quizsync.routes import sync
    app.register_blueprint(sync.bp)

    logger.info('app created', batch_size=app.config.get('QUIZSYNC_BATCH_SIZE'),
                injected_engines=app.config.get('QUIZSYNC_ENGINE_FACTORY') is not None)
    return app
