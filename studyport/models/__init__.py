"""
Study Import/Export Service
SQLAlchemy extension instance and model registry.

Usage:
    from studyport.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
