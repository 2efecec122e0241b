import logging
import os
import sys

from werkzeug.middleware.dispatcher import DispatcherMiddleware
from flask import Flask, jsonify
from flask_cors import CORS

from app_dishduel import app as dishduel_app, FRONTEND_ORIGIN

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

root = Flask(__name__)

# CORS for root routes (/ and /health)
CORS(root, resources={r"/*": {"origins": [FRONTEND_ORIGIN]}})

@root.get("/")
def home():
    return jsonify({
        "status": "ok",
        "routes": {
            "health": "/health",
            "dishduel": "/dishduel",
        }
    })

@root.get("/health")
def health():
    return jsonify({"status": "ok"})

# WSGI app mounted for gunicorn: app:app
app = DispatcherMiddleware(root, {
    "/dishduel": dishduel_app,
})
