"""Collaborators the batch subsystem calls but does not implement.

Action lookup, the single-action gateway, credential decryption and
JSON-Schema validation live elsewhere; these protocols are the narrow
contracts the batch code depends on.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple
from pydantic import BaseModel, Field


class ActionDefinition(BaseModel):
    id: str
    slug: str
    name: str = ""
    description: str = ""
    integration_id: str
    integration_slug: str
    base_url: str = ""
    batch_enabled: bool = False
    batch_config: Optional[Dict[str, Any]] = None
    bulk_config: Optional[Dict[str, Any]] = None
    input_schema: Optional[Dict[str, Any]] = None


class InvocationError(BaseModel):
    code: str
    message: str


class InvocationResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[InvocationError] = None


class Credential(BaseModel):
    credential_type: str  # api_key | oauth2_tokens | bearer | ...
    data: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


# validate(schema, payload) -> ValidationResult
Validator = Callable[[Dict[str, Any], Dict[str, Any]], ValidationResult]


class ActionResolver(Protocol):
    def get_action(self, tenant_id: str, integration_slug: str, action_slug: str) -> ActionDefinition:
        """Return the action or raise LookupError."""
        ...


class ActionGateway(Protocol):
    async def invoke(
        self,
        tenant_id: Optional[str],
        integration_slug: str,
        action_slug: str,
        input: Dict[str, Any],
    ) -> InvocationResult:
        ...


class CredentialResolver(Protocol):
    async def get_decrypted_credential(self, tenant_id: Optional[str], integration_id: str) -> Optional[Credential]:
        ...


class StaticActionCatalog:
    """In-memory ActionResolver, keyed by (integration_slug, action_slug)."""

    def __init__(self, actions: Iterable[ActionDefinition] = ()):
        self._actions: Dict[Tuple[str, str], ActionDefinition] = {}
        for action in actions:
            self.add(action)

    def add(self, action: ActionDefinition) -> None:
        self._actions[(action.integration_slug, action.slug)] = action

    def get_action(self, tenant_id: str, integration_slug: str, action_slug: str) -> ActionDefinition:
        try:
            return self._actions[(integration_slug, action_slug)]
        except KeyError:
            raise LookupError(f"Action not found: {integration_slug}/{action_slug}") from None
