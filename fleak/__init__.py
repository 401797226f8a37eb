# fleak/__init__.py
import logging

from flask import Flask, jsonify
from flask_cors import CORS
from flask_migrate import Migrate
from flask_jwt_extended import JWTManager

from fleak.config import Config
from fleak.errors import FlakeError
from fleak.extension.extensions import db, socketio

jwt = JWTManager()  # global instance


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    jwt.init_app(app)

    # Extensions
    CORS(app)
    db.init_app(app)
    Migrate(app, db)
    socketio.init_app(
        app,
        cors_allowed_origins="*",
        async_mode=app.config.get("SOCKETIO_ASYNC_MODE"),
    )

    # Import models and blueprints AFTER extensions are inited
    from fleak import models  # noqa: F401
    from fleak.controllers.flake_controller import bp_flakes
    from fleak.services.websocket_service import register_flake_events
    from fleak.commands import refund_expired_command, oracle_resolve_command, list_flakes_command

    app.register_blueprint(bp_flakes)

    @app.errorhandler(FlakeError)
    def handle_flake_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{type(e).__name__}: {e.message} {e.details}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(500)
    def handle_internal_error(e):
        app.logger.exception("Unhandled error")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500

    # Socket events
    register_flake_events()

    app.cli.add_command(refund_expired_command)
    app.cli.add_command(oracle_resolve_command)
    app.cli.add_command(list_flakes_command)

    return app
