"""
Variable Service
Resolves `{{name}}` tokens against session variables, the bound customer and the bound chat.
"""
import re
import unicodedata
from datetime import datetime
from typing import Optional, Dict, List, Any

from utils.log_utils import LogUtil
from models.flow_data import FlowVariable
from models.customer_data import CustomerData, ChatData

# Non-greedy, no nested braces
INTERPOLATION_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

CUSTOMER_PREFIX = "customer."
CHAT_PREFIX = "chat."

CUSTOMER_FIELDS = (
    "id", "name", "surname", "email", "phone", "whatsapp", "instagram",
    "facebook", "profile_picture", "funnel_id", "stage_id",
)
CHAT_FIELDS = (
    "id", "status", "ticket_number", "start_time", "last_message_at", "channel",
    "team_id", "assigned_to", "sale_value", "tags",
)


def normalize_variable_name(name: Optional[str]) -> str:
    """
    Lower-case, strip diacritics, collapse non-alphanumeric runs to `_`, trim `_`.
    "Nome do Cliente!" -> "nome_do_cliente"
    """
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFKD", name)
    without_marks = "".join(char for char in decomposed if not unicodedata.combining(char))
    collapsed = re.sub(r"[^a-z0-9]+", "_", without_marks.lower())
    return collapsed.strip("_")


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(item) for item in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ResolutionContext:
    """
    Everything a `{{name}}` token can resolve against during one node execution.
    """
    def __init__(
        self,
        variables: Optional[Dict[str, str]] = None,
        customer: Optional[CustomerData] = None,
        chat: Optional[ChatData] = None
    ):
        self.variables = variables or {}
        self.customer = customer
        self.chat = chat


class VariableService:
    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def interpolate(self, template: Optional[str], context: ResolutionContext) -> str:
        """
        Replace every `{{name}}` token left to right in a single pass.
        Substituted values are never re-scanned, unresolved names become "".
        """
        if not template:
            return ""

        def _replace(match: re.Match) -> str:
            name = match.group(1)
            value = self.resolve(name, context)
            if value is None:
                self.log_util.warning(
                    service_name="VariableService",
                    message=f"[NODE_EXEC] Unresolved variable '{name}', substituting empty string"
                )
                return ""
            return value

        return INTERPOLATION_PATTERN.sub(_replace, template)

    def resolve(self, name: str, context: ResolutionContext) -> Optional[str]:
        """
        Resolution order: session variables, customer.*, chat.*.
        Returns None when nothing matches.
        """
        name = (name or "").strip()
        if not name:
            return None

        if name in context.variables:
            return format_value(context.variables[name])

        if name.startswith(CUSTOMER_PREFIX):
            return self._resolve_customer(name[len(CUSTOMER_PREFIX):], context.customer)

        if name.startswith(CHAT_PREFIX):
            return self._resolve_chat(name[len(CHAT_PREFIX):], context.chat)

        return None

    def _resolve_customer(self, field: str, customer: Optional[CustomerData]) -> Optional[str]:
        if customer is None:
            return None
        if field in CUSTOMER_FIELDS:
            return format_value(getattr(customer, field))
        # Custom fields are addressed by slug
        if field in customer.custom_fields:
            return format_value(customer.custom_fields[field])
        slug = normalize_variable_name(field)
        if slug in customer.custom_fields:
            return format_value(customer.custom_fields[slug])
        return None

    def _resolve_chat(self, field: str, chat: Optional[ChatData]) -> Optional[str]:
        if chat is None:
            return None
        if field in CHAT_FIELDS:
            return format_value(getattr(chat, field))
        return None

    def build_session_variables(self, variables: List[FlowVariable], preview: bool = False) -> Dict[str, str]:
        """
        Initial runtime bindings from the flow's variable defaults.
        Empty-named variables are incomplete and left out. Preview sessions prefer testValue.
        """
        bindings: Dict[str, str] = {}
        for variable in variables:
            if not variable.name:
                continue
            value = variable.value
            if preview and variable.testValue not in (None, ""):
                value = variable.testValue
            bindings[variable.name] = value or ""
        return bindings

    def normalize_flow_variables(self, variables: List[FlowVariable]) -> List[FlowVariable]:
        """
        Authoring guard: normalize names and blank the newer of two variables sharing a name.
        """
        seen = set()
        normalized: List[FlowVariable] = []
        for variable in variables:
            name = normalize_variable_name(variable.name)
            if name and name in seen:
                self.log_util.warning(
                    service_name="VariableService",
                    message=f"Duplicate variable name '{name}' on variable {variable.id}, reverting to empty"
                )
                name = ""
            if name:
                seen.add(name)
            normalized.append(variable.model_copy(update={"name": name}))
        return normalized
