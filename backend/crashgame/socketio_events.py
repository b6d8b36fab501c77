from flask import request, current_app
from flask_socketio import emit
from crashgame import socketio, get_round_manager
from crashgame.services.game.errors import GameError


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def handle_connect():
    """Bring a new subscriber up to date: current round and prices, to this socket only."""
    manager = get_round_manager()
    emit('connected', {'message': 'Connected to /ws'})
    emit('state', manager.get_game_state())
    emit('priceUpdate', {'prices': manager.get_prices()})


def handle_disconnect():
    current_app.logger.info(f"[ws-disconnect] sid={_get_sid()}")


def handle_cashout(data):
    player_id = (data or {}).get('playerId') or (data or {}).get('username')
    if not player_id:
        emit('error', {'kind': 'validation_error', 'message': 'playerId is required'})
        return
    try:
        # Broadcast playerCashout and the requester-only cashoutSuccess are sent by the manager
        get_round_manager().cashout(player_id, sid=_get_sid())
    except GameError as exc:
        emit('error', exc.to_dict())


def handle_get_state(data=None):
    emit('state', get_round_manager().get_game_state())


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('cashout', handle_cashout, namespace=namespace)
        socketio.on_event('get_state', handle_get_state, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
