import logging
import sys

from app.campsite import create_app

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

try:
    app = create_app()
except RuntimeError as e:
    logging.getLogger("app.wsgi").critical("Startup failed: %s", e)
    sys.exit(1)
