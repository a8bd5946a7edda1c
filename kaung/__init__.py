import logging

from flask import Flask, jsonify
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError

from .infra.models import db
from .infra.context import user_context_middleware
import config

logger = logging.getLogger('log')


def create_app(test_config=None):
    app = Flask(__name__)
    CORS(app) # 开启全局跨域支持

    # 默认配置，可被 test_config 覆盖
    app.config.from_mapping(
        SECRET_KEY=config.secret_key,
        SQLALCHEMY_DATABASE_URI='mysql+pymysql://{}:{}@{}/{}'.format(
            config.username, config.password, config.db_address, config.db_name),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        SEED_DEMO_DATA=True,
    )

    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db.init_app(app)

    # 注册 ORM 事件监听（订单实时推送）
    from .infra import events  # noqa: F401

    # 注册用户上下文中间件
    app.before_request(user_context_middleware)

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(e):
        db.session.rollback()
        logger.exception("database error: %s", e)
        return jsonify({"error": "server_error"}), 500

    # 注册蓝图
    from .api.consumer import consumer_bp
    from .api.chat import chat_bp
    from .api.admin import admin_bp

    app.register_blueprint(consumer_bp, url_prefix='/api')
    app.register_blueprint(chat_bp, url_prefix='/api')
    app.register_blueprint(admin_bp, url_prefix='/api')

    # 初始化数据库（开发环境方便起见）
    with app.app_context():
        try:
            db.create_all()
            from .infra.migrations import run_auto_migrations
            run_auto_migrations()
            if app.config.get("SEED_DEMO_DATA"):
                from .infra.repository import _ensure_seed_db
                _ensure_seed_db()
        except SQLAlchemyError as e:
            logger.warning("DB init failed (maybe connection error): %s", e)

    return app
