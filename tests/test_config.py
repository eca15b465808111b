"""
Environment variable configuration.

Note: `create_app` is imported inside test functions (not at module level)
so each test builds a fresh Flask app with the environment it set up.
"""
import logging
import os
import tempfile

ENV_KEYS = [
    'APP_DB_PATH',
    'APP_DATABASE_URL',
    'APP_MAX_BATCH_SIZE',
    'APP_UNDO_WINDOW_DAYS',
    'APP_DISPLAY_LANGUAGE',
    'APP_LOG_DIR',
]


def _clear_env():
    for key in ENV_KEYS:
        os.environ.pop(key, None)


def test_default_configuration():
    """Defaults apply when no env vars are set"""
    _clear_env()
    with tempfile.TemporaryDirectory() as tmp:
        from lineage import create_app
        app = create_app({'TESTING': True, 'DATABASE': os.path.join(tmp, 'db.sqlite')})
        assert app.config['MAX_BATCH_SIZE'] == 50
        assert app.config['UNDO_WINDOW_DAYS'] == 30
        assert app.config['DISPLAY_LANGUAGE'] == 'ar'
        assert app.config['DATABASE_URL'] is None
        assert 'lineage_locks' in app.extensions


def test_env_overrides():
    """APP_* variables override the defaults"""
    with tempfile.TemporaryDirectory() as tmp:
        os.environ['APP_DB_PATH'] = os.path.join(tmp, 'custom.sqlite')
        os.environ['APP_MAX_BATCH_SIZE'] = '10'
        os.environ['APP_UNDO_WINDOW_DAYS'] = '7'
        os.environ['APP_DISPLAY_LANGUAGE'] = 'en'
        try:
            from lineage import create_app
            app = create_app({'TESTING': True})
            assert app.config['DATABASE'] == os.path.join(tmp, 'custom.sqlite')
            assert app.config['MAX_BATCH_SIZE'] == 10
            assert app.config['UNDO_WINDOW_DAYS'] == 7
            assert app.config['DISPLAY_LANGUAGE'] == 'en'
            assert os.path.exists(os.path.join(tmp, 'custom.sqlite'))
        finally:
            _clear_env()


def test_database_url_wins_over_path():
    """APP_DATABASE_URL selects the engine directly"""
    with tempfile.TemporaryDirectory() as tmp:
        url_path = os.path.join(tmp, 'from_url.sqlite')
        os.environ['APP_DATABASE_URL'] = f'sqlite:///{url_path}'
        try:
            from lineage import create_app
            from lineage.db import get_engine
            create_app({'TESTING': True, 'DATABASE': os.path.join(tmp, 'unused.sqlite')})
            assert get_engine().url.database == url_path
            assert os.path.exists(url_path)
            assert not os.path.exists(os.path.join(tmp, 'unused.sqlite'))
        finally:
            _clear_env()


def test_test_config_overrides_env():
    """Explicit test config beats the environment"""
    with tempfile.TemporaryDirectory() as tmp:
        os.environ['APP_MAX_BATCH_SIZE'] = '10'
        try:
            from lineage import create_app
            app = create_app({'TESTING': True, 'DATABASE': os.path.join(tmp, 'db.sqlite'), 'MAX_BATCH_SIZE': 3})
            assert app.config['MAX_BATCH_SIZE'] == 3
        finally:
            _clear_env()


def test_logging_writes_rotating_file():
    """Outside of testing the app logs to <LOG_DIR>/app.log"""
    with tempfile.TemporaryDirectory() as tmp:
        os.environ['APP_LOG_DIR'] = os.path.join(tmp, 'logs')
        app_logger = logging.getLogger('lineage')
        try:
            from lineage import create_app
            app = create_app({'DATABASE': os.path.join(tmp, 'db.sqlite')})
            app.logger.info("hello")
            for handler in app.logger.handlers:
                handler.flush()
            assert os.path.exists(os.path.join(tmp, 'logs', 'app.log'))
        finally:
            _clear_env()
            for handler in list(app_logger.handlers):
                handler.close()
                app_logger.removeHandler(handler)
            werkzeug_logger = logging.getLogger('werkzeug')
            for handler in list(werkzeug_logger.handlers):
                if isinstance(handler, logging.FileHandler):
                    handler.close()
                    werkzeug_logger.removeHandler(handler)
