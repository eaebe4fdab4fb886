"""
HoldingManager — Approval Workflow & Alerts
SQLAlchemy extension instance shared by all models.

Model modules import ``db`` from here; ``create_app`` binds it to the app.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
