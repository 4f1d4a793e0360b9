"""Local development entry point.

Usage:
    python run.py                  # FLASK_ENV from .env, defaults to development
    FLASK_ENV=production python run.py

Loads .env before the app factory reads config, then serves on :5000.
Payment adapters are registered from whatever credentials the
environment provides; missing ones are logged and skipped.
"""

import os

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from scanmyscale import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(debug=app.config.get("DEBUG", False), host="0.0.0.0", port=port)
