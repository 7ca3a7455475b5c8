"""Expose ORM models at package level.

Importing the package registers every table on ``Base.metadata`` so that
``create_all`` sees them. The `F401` noqa suppresses unused-import warnings
for the explicit re-exports.
"""

from .base import Base  # noqa: F401
from .batch_jobs import BatchJobRecord  # noqa: F401
