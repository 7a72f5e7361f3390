"""Inbound message contracts (anti-corruption layer).

Upstream services own these payloads; only the fields billing needs are
declared and anything else is ignored.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class _Contract(BaseModel):
    model_config = ConfigDict(extra="ignore")


class UserCreated(_Contract):
    user_id: str
    tenant_id: str | None = None
    tenant_type: str = "individual"
    email: str | None = None


class PlanChangeRequested(_Contract):
    subscription_id: str
    plan_id: str
    changed_at: datetime | None = None


class SchoolRegistered(_Contract):
    school_id: str
    name: str | None = None
