"""
app/auth/decorators.py
----------------------
Reusable route-protection decorators.
Usage:
    from app.auth.decorators import login_required, admin_required, roles_required

    @promotions.route('/quote', methods=['POST'])
    @login_required
    def quote():
        ...

    @promotions.route('/<int:promo_id>/preview', methods=['POST'])
    @roles_required('admin', 'staff')
    def preview_promo(promo_id):
        ...
"""
from functools import wraps
from flask import session, abort


def login_required(f):
    """
    Reject unauthenticated requests with 401.
    Checks for 'user_id' key in the Flask session.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            abort(401)
        return f(*args, **kwargs)
    return decorated


def roles_required(*roles):
    """
    Allow access only to users whose session role is one of `roles`.
    Unauthenticated users get 401, authenticated users with another role 403.
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if 'user_id' not in session:
                abort(401)
            if session.get('role') not in roles:
                abort(403)
            return f(*args, **kwargs)
        return decorated
    return decorator


admin_required = roles_required('admin')
