# Overview: Shared Flask extension instances; models and services import `db` from here.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()
