# Overview: Flask extension instances shared by models, services and the CLI.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# Single SQLAlchemy handle; every model, service and lease query goes through db.session.
db = SQLAlchemy()
migrate = Migrate()
