from app import create_app, db
import os

config_name = os.environ.get('FLASK_ENV', 'production')
app = create_app(config_name)

# ── Ensure tables exist on startup ──
with app.app_context():
    from app.auth import models as _auth_models              # noqa: F401, E402
    from app.promotions import models as _promotion_models   # noqa: F401, E402
    try:
        db.create_all()
    except Exception as e:
        app.logger.error(f"⚠️ Startup table check failed: {e}")

if __name__ == "__main__":
    app.run()
