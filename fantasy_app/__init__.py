# fantasy_app/__init__.py
from flask import Flask, jsonify
from .config import SECRET_KEY
from .transfer_routes import bp as transfer_bp


def create_app():
    app = Flask(__name__)
    app.secret_key = SECRET_KEY

    # Регистрация блюпринтов
    app.register_blueprint(transfer_bp)

    @app.route("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    return app
