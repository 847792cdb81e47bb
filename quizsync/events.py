from flask import request
from flask_socketio import emit, join_room

from quizsync import socketio
from quizsync.decorators import uid_for_token


def user_room(uid):
    return f'user_{uid}'


def broadcast_restoration_state(uid, state):
    """Push a restoration transition to every socket of the user."""
    socketio.emit('restoration_state', state.to_dict(), to=user_room(uid))


@socketio.on('connect')
def handle_connect(auth=None):
    token = (auth or {}).get('token') or request.args.get('token')
    uid = uid_for_token(token)
    if not uid:
        return False

    join_room(user_room(uid))
    from quizsync import get_engine
    engine = get_engine(uid)
    emit('restoration_state', engine.restoration.state.to_dict())
