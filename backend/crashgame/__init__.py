from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)


def get_round_manager(flask_app=None):
    from flask import current_app
    app = flask_app or current_app
    return app.extensions['round_manager']


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Import and register blueprints here
    from crashgame.main import main
    flask_app.register_blueprint(main)

    from crashgame.api.game import game
    flask_app.register_blueprint(game, url_prefix='/api')

    from crashgame.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    # Round engine wiring: wallet/archive/prices are the durable and external collaborators
    from crashgame.services.archive import RoundArchive
    from crashgame.services.game.events import SocketIOEmitter
    from crashgame.services.game.manager import build_round_manager
    from crashgame.services.prices import PriceOracle
    from crashgame.services.wallets import WalletStore

    cfg = flask_app.config
    prices = PriceOracle(
        cfg['PRICE_FEED_URL'],
        cfg['FALLBACK_PRICES'],
        timeout=cfg.get('PRICE_FEED_TIMEOUT_SEC', 5),
        logger=flask_app.logger,
    )
    manager = build_round_manager(
        cfg,
        wallets=WalletStore(flask_app, cfg['DEFAULT_BALANCES']),
        archive=RoundArchive(flask_app),
        prices=prices,
        emitter=SocketIOEmitter(socketio, namespace='/ws'),
        spawn=socketio.start_background_task,
        logger=flask_app.logger,
    )
    flask_app.extensions['round_manager'] = manager

    # Flask-Login user loader
    from crashgame.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    flask_app.cli.add_command(db_reset_command)

    return flask_app
