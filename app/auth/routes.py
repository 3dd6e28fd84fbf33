from flask import request, session, jsonify, current_app
from app.auth import auth
from app.auth.models import User


@auth.route('/login', methods=['POST'])
def login():
    """
    Validate credentials (JSON or form body) and populate the session.
    """
    data = request.get_json(silent=True) or request.form
    username = str(data.get('username', '')).strip()
    password = str(data.get('password', ''))

    # Basic presence validation
    if not username or not password:
        return jsonify({'ok': False, 'error': {
            'code': 'VALIDATION_ERROR', 'message': 'Username and password are required.'}}), 400

    user = User.query.filter_by(username=username).first()
    if user is None or not user.check_password(password):
        # Deliberately vague — don't reveal which field was wrong
        current_app.logger.warning(f"Failed login attempt for username: {username}")
        return jsonify({'ok': False, 'error': {
            'code': 'INVALID_CREDENTIALS', 'message': 'Invalid username or password.'}}), 401

    # ── Populate session (minimal — only what's needed) ──
    session.clear()
    session['user_id'] = user.id
    session['role']    = user.role.value  # 'admin', 'staff' or 'customer'
    session.permanent  = True             # respect PERMANENT_SESSION_LIFETIME

    current_app.logger.info(f"User {user.username} logged in successfully.")
    return jsonify({'ok': True, 'data': {'id': user.id, 'name': user.name, 'role': user.role.value}})


@auth.route('/logout', methods=['POST'])
def logout():
    """Clear the session."""
    session.clear()
    return jsonify({'ok': True, 'data': None})
