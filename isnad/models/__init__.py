"""
ISNAD Workflow Engine
Database instance shared by all models.

Usage:
    from isnad.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
