# Overview: Flask extension instances for the document store, migrations and the change feed.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .services.change_feed import ChangeFeed

db = SQLAlchemy()
migrate = Migrate()
change_feed = ChangeFeed()
