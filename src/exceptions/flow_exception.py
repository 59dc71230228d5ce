from typing import List, Optional


class FlowException(Exception):
    """
    This is the base exception for all flow exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

class FlowDBException(FlowException):
    """
    This is the exception for all flow database exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message=message, status_code=status_code)

class FlowServiceException(FlowException):
    """
    This is the exception for all flow service exceptions
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=500)

class FlowNotFoundException(FlowException):
    """
    This is the exception when a flow, trigger or session is not found
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=404)

class FlowValidationException(FlowException):
    """
    This is the exception for flow validation errors.
    Carries every structural problem found, not only the first one.
    """
    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems = problems or []
        super().__init__(message=message, status_code=400)

class NodeConfigurationException(FlowException):
    """
    Raised when a node's configuration cannot be executed (missing field, invalid URL or JSON)
    """
    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message=message, status_code=422)

class ExternalCallException(FlowException):
    """
    Raised when an external call (HTTP request node, OpenAI, agent service, channel dispatch) fails
    """
    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message=message, status_code=502)

class SessionStateException(FlowException):
    """
    Raised when an operation is not valid for the session's current state
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=409)
