"""
Procurement Hub - Recipient Resolution

One pure strategy per resolver tag. Each strategy maps
(entity_snapshot, WorkflowContext) to a list of RecipientDescriptor; all
data is preloaded into the context by the orchestrator, so strategies never
touch the database.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Callable

from services.workflow_engine import WorkflowConfiguration, WorkflowStage, WorkflowRole


class RecipientResolverTag(str, Enum):
    REQUESTOR = "REQUESTOR"
    ENTITY_OWNER = "ENTITY_OWNER"
    CURRENT_STAGE_ROLE = "CURRENT_STAGE_ROLE"
    PREVIOUS_STAGE_ROLE = "PREVIOUS_STAGE_ROLE"
    NEXT_STAGE_ROLE = "NEXT_STAGE_ROLE"
    ACTION_PERFORMER = "ACTION_PERFORMER"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    LOCATION_ADMIN = "LOCATION_ADMIN"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    VENDOR = "VENDOR"
    CUSTOM = "CUSTOM"


@dataclass
class RecipientDescriptor:
    email: str
    name: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None
    recipient_type: Optional[str] = None


@dataclass
class WorkflowContext:
    """Everything the strategies may look at for one event."""
    company_id: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    actor: Optional[Dict] = None
    requestor: Optional[Dict] = None
    owner: Optional[Dict] = None
    vendor: Optional[Dict] = None
    config: Optional[WorkflowConfiguration] = None
    current_stage: Optional[WorkflowStage] = None
    previous_stage: Optional[WorkflowStage] = None
    next_stage: Optional[WorkflowStage] = None
    users_by_role: Dict[str, List[Dict]] = field(default_factory=dict)
    custom_recipients: List[Any] = field(default_factory=list)

    def users_for_roles(self, roles: List[str]) -> List[Dict]:
        users = []
        for role in roles or []:
            users.extend(self.users_by_role.get(role, []))
        return users


def _from_user(user: Optional[Dict], tag: RecipientResolverTag) -> List[RecipientDescriptor]:
    if not user or not user.get("email"):
        return []
    return [RecipientDescriptor(
        email=user["email"],
        name=user.get("name"),
        user_id=user.get("id"),
        role=user.get("role"),
        recipient_type=tag.value,
    )]


def _from_users(users: List[Dict], tag: RecipientResolverTag) -> List[RecipientDescriptor]:
    descriptors = []
    for user in users:
        descriptors.extend(_from_user(user, tag))
    return descriptors


def _stage_users(stage: Optional[WorkflowStage], ctx: WorkflowContext, tag) -> List[RecipientDescriptor]:
    if stage is None:
        return []
    return _from_users(ctx.users_for_roles(stage.allowed_roles), tag)


def resolve_requestor(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _from_user(ctx.requestor, RecipientResolverTag.REQUESTOR)


def resolve_entity_owner(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _from_user(ctx.owner or ctx.requestor, RecipientResolverTag.ENTITY_OWNER)


def resolve_current_stage_role(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _stage_users(ctx.current_stage, ctx, RecipientResolverTag.CURRENT_STAGE_ROLE)


def resolve_previous_stage_role(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _stage_users(ctx.previous_stage, ctx, RecipientResolverTag.PREVIOUS_STAGE_ROLE)


def resolve_next_stage_role(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _stage_users(ctx.next_stage, ctx, RecipientResolverTag.NEXT_STAGE_ROLE)


def resolve_action_performer(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _from_user(ctx.actor, RecipientResolverTag.ACTION_PERFORMER)


def resolve_company_admin(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _from_users(
        ctx.users_for_roles([WorkflowRole.COMPANY_ADMIN.value]), RecipientResolverTag.COMPANY_ADMIN
    )


def resolve_location_admin(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _from_users(
        ctx.users_for_roles([WorkflowRole.LOCATION_ADMIN.value, WorkflowRole.SITE_ADMIN.value]),
        RecipientResolverTag.LOCATION_ADMIN,
    )


def resolve_finance_admin(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    return _from_users(
        ctx.users_for_roles([WorkflowRole.FINANCE_ADMIN.value]), RecipientResolverTag.FINANCE_ADMIN
    )


def resolve_vendor(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    vendor = ctx.vendor
    if not vendor:
        return []
    email = vendor.get("contact_email") or vendor.get("email")
    if not email:
        return []
    return [RecipientDescriptor(
        email=email,
        name=vendor.get("name"),
        user_id=vendor.get("id"),
        role=WorkflowRole.VENDOR.value,
        recipient_type=RecipientResolverTag.VENDOR.value,
    )]


def resolve_custom(snapshot: Dict, ctx: WorkflowContext) -> List[RecipientDescriptor]:
    descriptors = []
    for entry in ctx.custom_recipients:
        if isinstance(entry, str):
            entry = {"email": entry}
        if entry.get("email"):
            descriptors.append(RecipientDescriptor(
                email=entry["email"],
                name=entry.get("name"),
                role=entry.get("role"),
                recipient_type=RecipientResolverTag.CUSTOM.value,
            ))
    return descriptors


RESOLVERS: Dict[str, Callable[[Dict, WorkflowContext], List[RecipientDescriptor]]] = {
    RecipientResolverTag.REQUESTOR.value: resolve_requestor,
    RecipientResolverTag.ENTITY_OWNER.value: resolve_entity_owner,
    RecipientResolverTag.CURRENT_STAGE_ROLE.value: resolve_current_stage_role,
    RecipientResolverTag.PREVIOUS_STAGE_ROLE.value: resolve_previous_stage_role,
    RecipientResolverTag.NEXT_STAGE_ROLE.value: resolve_next_stage_role,
    RecipientResolverTag.ACTION_PERFORMER.value: resolve_action_performer,
    RecipientResolverTag.COMPANY_ADMIN.value: resolve_company_admin,
    RecipientResolverTag.LOCATION_ADMIN.value: resolve_location_admin,
    RecipientResolverTag.FINANCE_ADMIN.value: resolve_finance_admin,
    RecipientResolverTag.VENDOR.value: resolve_vendor,
    RecipientResolverTag.CUSTOM.value: resolve_custom,
}


def resolve_recipients(
    tags: List[str],
    snapshot: Dict,
    ctx: WorkflowContext,
    exclude_action_performer: bool = False,
) -> List[RecipientDescriptor]:
    """
    Union the strategies for tags, de-duplicated by lower-cased email.

    When two strategies return the same email, the first resolved descriptor
    (and its role) is kept. The actor is removed after the union.
    """
    seen = {}
    for tag in tags:
        strategy = RESOLVERS.get(tag)
        if strategy is None:
            continue
        for descriptor in strategy(snapshot, ctx):
            key = descriptor.email.strip().lower()
            if key not in seen:
                seen[key] = descriptor

    recipients = list(seen.values())
    if exclude_action_performer:
        actor_email = ((ctx.actor or {}).get("email") or "").strip().lower()
        recipients = [
            r for r in recipients
            if not (ctx.actor_id and r.user_id == ctx.actor_id)
            and not (actor_email and r.email.strip().lower() == actor_email)
        ]
    return recipients


def roles_needed(config: Optional[WorkflowConfiguration]) -> List[str]:
    """Every role the strategies might ask the context for."""
    roles = {
        WorkflowRole.COMPANY_ADMIN.value,
        WorkflowRole.LOCATION_ADMIN.value,
        WorkflowRole.SITE_ADMIN.value,
        WorkflowRole.FINANCE_ADMIN.value,
    }
    if config is not None:
        for stage in config.stages:
            roles.update(stage.allowed_roles)
    return sorted(roles)
