import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'


def configure_logging(app):
    """
    Attach console and rotating file handlers to the package logger.

    Flask names ``app.logger`` after the import name, so the handlers set here also
    receive every ``periodicbackup.*`` module logger. Handlers from an earlier call
    (another app built in the same process) are replaced, not stacked.
    """
    log_dir = os.path.join(app.config['DATA_DIR'], 'logs')
    os.makedirs(log_dir, exist_ok=True)

    level_name = app.config.get('LOG_LEVEL') or ('DEBUG' if app.config.get('DEBUG') else 'INFO')
    log_level = logging.getLevelName(level_name.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, app.config.get('LOG_FILE', 'periodicbackup.log')),
        maxBytes=app.config.get('LOG_MAX_BYTES', 10485760),
        backupCount=app.config.get('LOG_BACKUP_COUNT', 10)
    )
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    package_logger = app.logger
    for handler in list(package_logger.handlers):
        if getattr(handler, '_periodicbackup', False):
            package_logger.removeHandler(handler)
            handler.close()

    for handler in (console_handler, file_handler):
        handler.setLevel(log_level)
        handler._periodicbackup = True
        package_logger.addHandler(handler)
    package_logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _owns_scheduler(app):
    """Only one process runs the scheduler: the reloader child in development, the
    designated gunicorn worker (SCHEDULER_WORKER) otherwise."""
    if app.config.get('DEBUG', False):
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
        return is_reloader_child

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")
    return is_scheduler_worker


def _start_scheduler(app):
    from periodicbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler, sync_backup_schedule

    init_scheduler(app)
    start_scheduler()
    with app.app_context():
        sync_backup_schedule()

    atexit.register(stop_scheduler)
    app.logger.info("Backup scheduler started")


def create_app(config_name=None):
    """Flask application factory"""
    app = Flask(__name__)

    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from periodicbackup.config import config
    app.config.from_object(config[config_name])

    configure_logging(app)

    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)

    db.init_app(app)

    from periodicbackup.routes import backup_routes, settings_routes
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(settings_routes.bp)

    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    from periodicbackup.models import ensure_default_settings
    with app.app_context():
        db.create_all()
        ensure_default_settings(app)

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Scheduler disabled by configuration")
    elif _owns_scheduler(app):
        _start_scheduler(app)
    else:
        app.logger.info("Scheduler skipped in this process (not the designated scheduler worker)")

    return app
