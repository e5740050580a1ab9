"""Central model registry: import all models so Alembic autodiscover works."""

from prflow.database import Base  # noqa: F401

from prflow.models.project import Project  # noqa: F401
from prflow.models.purchase_request import (  # noqa: F401
    PurchaseRequest,
    PrItem,
    PrApprovalHistory,
    PrComment,
)
