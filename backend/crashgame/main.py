from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from crashgame import db, get_round_manager
from crashgame.models import User
from crashgame.services.game.errors import GameError
from crashgame.services.game.ledger import validate_player_id

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the crypto crash game server!'})


@main.route('/health')
def health():
    return jsonify({'status': 'healthy'})


@main.route('/login', methods=['POST'])
def login():
    """Log in, registering the username on first sight."""
    data = request.get_json(silent=True) or {}
    username = data.get('username')
    password = data.get('password')
    if not username or not password:
        return jsonify({'success': False, 'error': 'Username and password required'}), 400
    try:
        validate_player_id(username)
    except GameError as exc:
        return jsonify({'success': False, 'error': exc.to_dict()}), exc.status_code

    user = User.query.filter_by(username=username).first()
    if user is None:
        user = User(username=username)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
    elif not user.check_password(password):
        return jsonify({'success': False, 'error': 'Invalid password'}), 401

    login_user(user, remember=True)
    try:
        wallet = get_round_manager().get_or_create_wallet(user.username)
    except GameError as exc:
        return jsonify({'success': False, 'error': exc.to_dict()}), exc.status_code
    return jsonify({'success': True, 'data': {'username': user.username, 'balances': wallet['balances']}})


@main.route('/check_login', methods=['GET'])
@login_required
def check_login():
    return jsonify({'success': True, 'user': current_user.to_dict()})


@main.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True})
