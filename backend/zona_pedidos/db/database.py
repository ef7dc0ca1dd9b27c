# backend/zona_pedidos/db/database.py
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def init_db(app):
    db.init_app(app)
    # Las tablas de billing se crean si no existen (en prod las migraciones SQL mandan)
    if app.config.get("BILLING_CREATE_TABLES", True):
        with app.app_context():
            from zona_pedidos.billing import models  # noqa: F401
            db.create_all()
