from flask import Blueprint, jsonify, request, current_app
from flask_login import current_user
from crashgame import get_round_manager
from crashgame.services.game.errors import GameError


game = Blueprint('game', __name__)


@game.errorhandler(GameError)
def handle_game_error(exc):
    current_app.logger.info(f"[rejected] {request.method} {request.path} kind={exc.kind} message={exc.message}")
    return jsonify({'success': False, 'error': exc.to_dict()}), exc.status_code


def _player_id(data):
    """Player from the body (playerId or username), else the logged-in user."""
    player_id = data.get('playerId') or data.get('username')
    if not player_id and current_user.is_authenticated:
        player_id = current_user.username
    return player_id


@game.route('/prices', methods=['GET'])
def get_prices():
    return jsonify({'success': True, 'data': {'prices': get_round_manager().get_prices()}})


@game.route('/wallet/<string:player_id>', methods=['GET', 'POST'])
def get_wallet(player_id):
    return jsonify({'success': True, 'data': get_round_manager().get_or_create_wallet(player_id)})


@game.route('/bet', methods=['POST'])
def place_bet():
    data = request.get_json(silent=True) or {}
    player_id = _player_id(data)
    usd_amount = data.get('usdAmount')
    crypto_type = data.get('cryptoType')
    if not all([player_id, usd_amount is not None, crypto_type]):
        return jsonify({'success': False, 'error': {
            'kind': 'validation_error',
            'message': 'Missing required fields',
        }}), 400
    receipt = get_round_manager().place_bet(player_id, usd_amount, crypto_type)
    return jsonify({'success': True, 'data': receipt})


@game.route('/cashout', methods=['POST'])
def cashout():
    data = request.get_json(silent=True) or {}
    player_id = _player_id(data)
    if not player_id:
        return jsonify({'success': False, 'error': {
            'kind': 'validation_error',
            'message': 'playerId is required',
        }}), 400
    result = get_round_manager().cashout(player_id)
    return jsonify({'success': True, 'data': result})


@game.route('/state', methods=['GET'])
def get_game_state():
    return jsonify({'success': True, 'data': get_round_manager().get_game_state()})


@game.route('/rounds', methods=['GET'])
def list_rounds():
    try:
        limit = int(request.args.get('limit', 20))
    except ValueError:
        limit = 20
    limit = max(1, min(limit, 100))
    return jsonify({'success': True, 'data': {'rounds': get_round_manager().recent_rounds(limit)}})


@game.route('/rounds/<string:round_id>/verify', methods=['GET'])
def verify_round(round_id):
    result = get_round_manager().verify_round(round_id)
    if result is None:
        return jsonify({'success': False, 'error': {
            'kind': 'not_found',
            'message': f'Round {round_id} not found',
        }}), 404
    return jsonify({'success': True, 'data': result})
