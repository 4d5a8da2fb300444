"""
Matasa incident pipeline
SQLAlchemy extension instance shared by every model module.

Usage:
    from matasa.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
