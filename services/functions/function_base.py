"""
=====================================================
Dynamic AI Calling Platform - Function Contract
=====================================================
Typed interface shared by built-in and user-defined functions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class FunctionNotFound(Exception):
    """No dynamic or built-in function has this name"""


class TransientFunctionError(Exception):
    """Retryable failure: timeout, connectivity, upstream 5xx"""


@dataclass
class FunctionResult:
    """
    Outcome of one function execution

    success=False with an error is a normal value, not an exception:
    "slot unavailable" and "retries exhausted" both travel this way.
    """
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error, "data": self.data}


@dataclass
class FunctionContext:
    """Call-scoped information handed to every function"""
    call_id: str
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    calendar_event_type_id: Optional[str] = None
    calendar_provider_override: Optional[str] = None
    pending_slots: List[Any] = field(default_factory=list)
    timezone: str = "UTC"


class FunctionDescriptor(ABC):
    """
    A callable the model can request by name

    Subclasses set name/description/parameters and implement invoke().
    timeout_seconds / max_retries of None mean "executor default".
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}}
    timeout_seconds: Optional[float] = None
    max_retries: Optional[int] = None

    @abstractmethod
    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        """
        Run the function

        Returns:
            FunctionResult (business negatives are success=False results)

        Raises:
            TransientFunctionError: When the attempt may succeed if repeated
        """
        pass

    def schema(self) -> dict:
        """Function-calling schema sent to the model"""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
