"""Read-access rules for purchase requests."""

from prflow.services.identity import Actor, Role
from prflow.services.records import PurchaseRequestRecord

# Approvers and oversight roles see every PR; everyone else only their own
READ_ALL_ROLES = frozenset(
    {
        Role.PURCHASING,
        Role.COST_CONTROL,
        Role.GENERAL_MANAGER,
        Role.PROJECT_MANAGER,
        Role.DIRECTOR,
        Role.ADMIN,
    }
)


def reads_all(actor: Actor) -> bool:
    return actor.role in READ_ALL_ROLES


def can_read(actor: Actor, pr: PurchaseRequestRecord) -> bool:
    return reads_all(actor) or pr.created_by == actor.actor_id
