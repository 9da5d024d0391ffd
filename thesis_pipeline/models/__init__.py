"""
Thesis Pipeline
SQLAlchemy extension instance shared by every model module.

Usage:
    from thesis_pipeline.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
