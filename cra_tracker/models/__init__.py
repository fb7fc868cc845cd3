"""
CRA Request Tracker
Shared SQLAlchemy handle.

Usage:
    from cra_tracker.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
