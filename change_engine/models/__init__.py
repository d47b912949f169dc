"""
Change Management Engine — SQLAlchemy models.

The shared ``db`` handle lives here so every model module can do
``from change_engine.models import db`` without importing the app factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
