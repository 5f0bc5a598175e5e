"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from contentsync.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # scheduler + API threads
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        # Tables must be registered on the metadata before create_all
        from contentsync.models.content import ContentItem, ContentStatistics, Source  # noqa
        from contentsync.models.quota import QuotaUsage  # noqa
        from contentsync.models.sync import SyncCycleLog, SyncRecord  # noqa
        SQLModel.metadata.create_all(_engine)
        from contentsync.db.migrations import run_migrations
        run_migrations(_engine)
    return _engine
