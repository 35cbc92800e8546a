from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager

from .services.storage_service import StorageGateway
from .services.compile_queue import CompileQueue


db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
storage = StorageGateway()
compile_queue = CompileQueue()
