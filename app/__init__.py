import click
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from config import config

db = SQLAlchemy()


def create_app(config_name='default'):
    """Application factory — creates and configures the Flask app."""
    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # ── Logging ───────────────────────────────────────────────────
    from app.utils.logging import setup_logging
    setup_logging(app)

    # ── Extensions ────────────────────────────────────────────────
    db.init_app(app)

    # ── Blueprints ────────────────────────────────────────────────
    from app.auth import auth as auth_blueprint
    app.register_blueprint(auth_blueprint, url_prefix='/auth')

    from app.promotions import promotions as promotions_blueprint
    app.register_blueprint(promotions_blueprint, url_prefix='/promotions')

    # ── Error Handlers ────────────────────────────────────────────
    register_error_handlers(app)

    # ── CLI Commands ──────────────────────────────────────────────
    register_commands(app)

    # ── ProxyFix (HTTPS termination at the load balancer) ──
    if config_name == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    return app


def _error(code, message, status):
    return jsonify({'ok': False, 'error': {'code': code, 'message': message}}), status


def register_error_handlers(app):
    """JSON envelopes for HTTP errors raised anywhere in the app."""

    @app.errorhandler(400)
    def bad_request(e):
        return _error('BAD_REQUEST', 'Bad request', 400)

    @app.errorhandler(401)
    def unauthorized(e):
        return _error('UNAUTHORIZED', 'Please log in to access this resource.', 401)

    @app.errorhandler(403)
    def forbidden(e):
        return _error('FORBIDDEN', 'Access denied', 403)

    @app.errorhandler(404)
    def not_found(e):
        return _error('NOT_FOUND', 'Not found', 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error('METHOD_NOT_ALLOWED', 'Method not allowed', 405)

    @app.errorhandler(500)
    def internal_error(e):
        db.session.rollback()
        app.logger.error(f'Unhandled error: {e}')
        return _error('INTERNAL_ERROR', 'Server error', 500)


def register_commands(app):
    """Register custom Flask CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create all database tables."""
        from app.auth import models as _auth_models              # noqa: F401
        from app.promotions import models as _promotion_models   # noqa: F401

        db.create_all()
        click.echo('✅  Database tables created.')

    @app.cli.command('show-promotions')
    def show_promotions():
        """Show promotions with their usage counters (diagnostic)."""
        from app.promotions.models import Promotion
        rows = Promotion.query.order_by(Promotion.priority.desc(), Promotion.id).all()
        if not rows:
            click.echo('No promotions found. Run flask seed-demo first.')
            return
        click.echo(f'{"ID":<6} {"Name":<28} {"Type":<22} {"Code":<12} {"Uses":<12} {"Active"}')
        click.echo('─' * 90)
        for row in rows:
            cap = row.max_uses_total if row.max_uses_total is not None else '∞'
            click.echo(f'{row.id:<6} {row.name[:27]:<28} {row.type_label[:21]:<22} '
                       f'{(row.code or "-"):<12} {f"{row.uses_total}/{cap}":<12} '
                       f'{"yes" if row.is_active else "no"}')

    def _create_user(name, username, password, role):
        from app.auth.models import User

        if User.query.filter_by(username=username).first():
            click.echo(f'⚠️  User "{username}" already exists.')
            return

        user = User(name=name, username=username, role=role)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f'✅  {role.value.title()} user "{username}" created successfully.')

    @app.cli.command('seed-admin')
    @click.option('--name',     prompt='Full name',  help='Admin full name')
    @click.option('--username', prompt='Username',   help='Admin username')
    @click.option('--password', prompt=True, hide_input=True,
                  confirmation_prompt=True, help='Admin password')
    def seed_admin(name, username, password):
        """Create the initial admin user."""
        from app.auth.models import RoleEnum
        _create_user(name, username, password, RoleEnum.admin)

    @app.cli.command('seed-staff')
    @click.option('--name',     prompt='Full name',  help='Staff full name')
    @click.option('--username', prompt='Username',   help='Staff username')
    @click.option('--password', prompt=True, hide_input=True,
                  confirmation_prompt=True, help='Staff password')
    def seed_staff(name, username, password):
        """Create a staff user (read and preview promotions)."""
        from app.auth.models import RoleEnum
        _create_user(name, username, password, RoleEnum.staff)

    @app.cli.command('seed-demo')
    def seed_demo():
        """Populate database with demo users and promotions."""
        from app.auth.models import User, RoleEnum
        from app.promotions.models import Promotion
        from app.promotions.normalizer import normalize

        click.echo("🌱 Seeding demo data...")
        db.create_all()

        # Users
        if not User.query.filter_by(username='admin').first():
            u = User(name='Admin User', username='admin', role=RoleEnum.admin)
            u.set_password('demo123')
            db.session.add(u)

        if not User.query.filter_by(username='shopper1').first():
            u = User(name='Sarah Shopper', username='shopper1', role=RoleEnum.customer)
            u.segments_list = ['vip']
            u.set_password('123')
            db.session.add(u)

        db.session.commit()
        click.echo("✅ Users created (admin/demo123, shopper1/123).")

        # Promotions
        if Promotion.query.count() == 0:
            demo = [
                {'name': '10% off everything', 'type': 'PERCENT', 'value': 10,
                 'autoApply': True, 'stackingPolicy': 'COMBINABLE'},
                {'name': 'Free shipping over 200', 'type': 'FREE_SHIPPING',
                 'autoApply': True, 'stackingPolicy': 'COMBINABLE',
                 'eligibility': {'minSubtotalMinor': 20000}},
                {'name': 'VIP 25 off', 'type': 'FIXED_AMOUNT', 'value': 2500,
                 'code': 'vip25', 'priority': 10,
                 'targeting': {'mode': 'SEGMENT', 'allowedSegments': ['VIP']},
                 'limits': {'maxUsesTotal': 100, 'maxUsesPerUser': 1}},
            ]
            for patch in demo:
                promo = Promotion(uses_total=0)
                promo.apply_rule(normalize(patch))
                db.session.add(promo)
            db.session.commit()
            click.echo("✅ Promotions seeded.")

        click.echo("✅ Demo seed complete.")
