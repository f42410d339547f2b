# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models in the Practice Scheduler service.

    Model modules are imported by app.db.session so that Base.metadata is
    complete before create_all runs.
    """
    pass
