"""
PTW Engine — model package.

Holds the single Flask-SQLAlchemy handle shared by every model module.
The app factory binds it via ``db.init_app(app)`` and imports the model
modules so that ``db.create_all()`` sees every table.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
