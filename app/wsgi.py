import logging

from app.licensing import create_app

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# Schema and seed data come from scripts/release.py (alembic upgrade + init_db).
app = create_app()
