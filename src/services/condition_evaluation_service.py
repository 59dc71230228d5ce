"""
Condition Evaluation Service
Evaluates condition node branches in declared order.
"""
import re
from typing import List, Optional

from utils.log_utils import LogUtil
from models.flow_node_data import ConditionBranch, SubCondition, ELSE_HANDLE
from services.variable_service import VariableService, ResolutionContext

# Symbolic operators and their named equivalents
OPERATOR_ALIASES = {
    "==": "equalTo",
    "!=": "notEqual",
    ">": "greaterThan",
    "<": "lessThan",
    ">=": "greaterThanOrEqual",
    "<=": "lessThanOrEqual",
}

# clientData fields offered by the editor, mapped to interpolation names
CLIENT_DATA_FIELDS = {
    "custumer_name": "customer.name",
    "custumer_surname": "customer.surname",
    "custumer_phone": "customer.phone",
    "custumer_email": "customer.email",
    "chat_funil": "customer.funnel_id",
    "chat_price": "chat.sale_value",
    "chat_team": "chat.team_id",
    "chat_attendant": "chat.assigned_to",
    "chat_tag": "chat.tags",
}


def _as_number(value: str) -> Optional[float]:
    try:
        return float(value.strip().replace(",", ".")) if value.strip() else None
    except ValueError:
        return None


def _split_list(value: str) -> List[str]:
    return [item.strip().lower() for item in re.split(r"[,\n;]", value) if item.strip()]


class ConditionEvaluationService:
    def __init__(self, log_util: LogUtil, variable_service: VariableService):
        self.log_util = log_util
        self.variable_service = variable_service

    def select_branch(self, branches: List[ConditionBranch], context: ResolutionContext) -> str:
        """
        Returns `condition-{i}` for the first true branch, `else` when none holds.
        Exactly one handle is returned.
        """
        for index, branch in enumerate(branches):
            if self.evaluate_branch(branch, context):
                self.log_util.info(
                    service_name="ConditionEvaluationService",
                    message=f"[NODE_EXEC] Condition {index} matched"
                )
                return f"condition-{index}"
        self.log_util.info(
            service_name="ConditionEvaluationService",
            message="[NODE_EXEC] No condition matched, taking else branch"
        )
        return ELSE_HANDLE

    def evaluate_branch(self, branch: ConditionBranch, context: ResolutionContext) -> bool:
        if branch.subConditions:
            results = [self.evaluate_sub_condition(sub_condition, context) for sub_condition in branch.subConditions]
            return all(results) if branch.logicOperator == "AND" else any(results)
        if branch.variable:
            actual = self._lookup(branch.variable, context)
            expected = self.variable_service.interpolate(branch.value or "", context)
            return self.compare(actual, branch.operator or "==", expected)
        # A branch with nothing to test never matches
        return False

    def evaluate_sub_condition(self, sub_condition: SubCondition, context: ResolutionContext) -> bool:
        if sub_condition.type == "clientData":
            name = CLIENT_DATA_FIELDS.get(sub_condition.field, sub_condition.field)
        else:
            name = sub_condition.field
        actual = self._lookup(name, context)
        expected = self.variable_service.interpolate(sub_condition.value or "", context)
        return self.compare(actual, sub_condition.operator, expected)

    def _lookup(self, name: str, context: ResolutionContext) -> str:
        # Accept both "age" and "{{age}}"
        name = name.strip()
        if name.startswith("{{") and name.endswith("}}"):
            name = name[2:-2].strip()
        value = self.variable_service.resolve(name, context)
        return value if value is not None else ""

    def compare(self, actual: str, operator: str, expected: str) -> bool:
        operator = OPERATOR_ALIASES.get(operator, operator)
        actual_number, expected_number = _as_number(actual), _as_number(expected)
        numeric = actual_number is not None and expected_number is not None

        if operator == "equalTo":
            return actual_number == expected_number if numeric else actual.strip().lower() == expected.strip().lower()
        if operator == "notEqual":
            return actual_number != expected_number if numeric else actual.strip().lower() != expected.strip().lower()
        if operator in ("greaterThan", "lessThan", "greaterThanOrEqual", "lessThanOrEqual"):
            return self._compare_order(operator, actual_number, expected_number, actual, expected)
        if operator == "contains":
            return expected.lower() in actual.lower()
        if operator == "doesNotContain":
            return expected.lower() not in actual.lower()
        if operator == "startsWith":
            return actual.lower().startswith(expected.lower())
        if operator == "endsWith":
            return actual.lower().endswith(expected.lower())
        if operator == "isSet":
            return actual.strip() != ""
        if operator == "isEmpty":
            return actual.strip() == ""
        if operator in ("matchesRegex", "doesNotMatchRegex"):
            matched = self._regex_search(expected, actual)
            if matched is None:
                return False
            return matched if operator == "matchesRegex" else not matched
        if operator == "inList":
            return actual.strip().lower() in _split_list(expected)
        if operator == "notInList":
            return actual.strip().lower() not in _split_list(expected)

        self.log_util.warning(
            service_name="ConditionEvaluationService",
            message=f"[NODE_EXEC] Unknown condition operator '{operator}', defaulting to False"
        )
        return False

    def _compare_order(
        self,
        operator: str,
        actual_number: Optional[float],
        expected_number: Optional[float],
        actual: str,
        expected: str
    ) -> bool:
        if actual_number is None or expected_number is None:
            self.log_util.warning(
                service_name="ConditionEvaluationService",
                message=f"[NODE_EXEC] {operator} comparison failed (non-numeric values): actual='{actual}', expected='{expected}'"
            )
            return False
        comparisons: dict = {
            "greaterThan": actual_number > expected_number,
            "lessThan": actual_number < expected_number,
            "greaterThanOrEqual": actual_number >= expected_number,
            "lessThanOrEqual": actual_number <= expected_number,
        }
        return comparisons[operator]

    def _regex_search(self, pattern: str, value: str) -> Optional[bool]:
        try:
            return re.search(pattern, value) is not None
        except re.error as e:
            self.log_util.warning(
                service_name="ConditionEvaluationService",
                message=f"[NODE_EXEC] Invalid regex '{pattern}': {str(e)}"
            )
            return None


def select_option(options: List[str], answer: str) -> Optional[int]:
    """
    Index of the option matching `answer`: exact match on stripped text first,
    then case-insensitive. None when nothing matches.
    """
    stripped = answer.strip()
    for index, option in enumerate(options):
        if option.strip() == stripped:
            return index
    for index, option in enumerate(options):
        if option.strip().lower() == stripped.lower():
            return index
    return None
