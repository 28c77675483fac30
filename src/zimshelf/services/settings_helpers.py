"""Helpers for reading and writing the global update settings row."""

from sqlmodel import Session

from zimshelf.models.settings import SETTINGS_ROW_ID, UpdateSettings


def get_update_settings(session: Session) -> UpdateSettings:
    """Return the settings row, creating it with defaults on first access."""
    row = session.get(UpdateSettings, SETTINGS_ROW_ID)
    if row is None:
        row = UpdateSettings(id=SETTINGS_ROW_ID)
        session.add(row)
        session.commit()
        session.refresh(row)
    return row


def update_update_settings(session: Session, **changes: object) -> UpdateSettings:
    """Apply the given field changes to the settings row and commit."""
    row = get_update_settings(session)
    for key, value in changes.items():
        if value is not None and hasattr(row, key):
            setattr(row, key, value)
    session.add(row)
    session.commit()
    session.refresh(row)
    return row
