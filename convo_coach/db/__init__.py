"""SQLAlchemy schema and async engine for learner progress."""
