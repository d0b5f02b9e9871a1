# SQLModel definitions, imported here to ensure metadata is populated for Alembic.
from .sync import ChangeRecord, EntityVersion, SYSTEM_ACTOR  # noqa: F401
