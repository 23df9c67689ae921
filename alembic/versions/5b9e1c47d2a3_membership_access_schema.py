"""membership_access_schema

Revision ID: 5b9e1c47d2a3
Revises: 
Create Date: 2026-10-19 09:12:41.118204

"""
from typing import Sequence, Union

from alembic import op

from gymaccess.db_base import Base
import gymaccess.models  # noqa: F401 - required to register all model metadata


# revision identifiers, used by Alembic.
revision: str = '5b9e1c47d2a3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
