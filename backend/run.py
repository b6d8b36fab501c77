from crashgame import create_app, db, get_round_manager, socketio

app = create_app()

if __name__ == '__main__':
    with app.app_context():
        db.create_all()
    # The round cycle runs only in the serving process, never under `flask` CLI commands
    if app.config.get('AUTO_START_ROUNDS'):
        get_round_manager(app).start()
    try:
        # Use SocketIO server to enable websockets in dev
        socketio.run(app, debug=True, use_reloader=False)
    finally:
        get_round_manager(app).stop()
