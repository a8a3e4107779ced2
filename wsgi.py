import logging
import os

from dotenv import load_dotenv

load_dotenv()

from billing_engine import create_app

config = os.getenv("APP_ENV", "production")

app = create_app(config)
celery = app.extensions["celery"]

logging.getLogger(__name__).info(f"[BOOT] Running in {config} mode")
