"""
Classroom Observation Platform
Shared Flask-SQLAlchemy handle.

Every model module imports ``db`` from here; services own all commits.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
