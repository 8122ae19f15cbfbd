"""
=====================================================
Dynamic AI Calling Platform - Functions
=====================================================
"""

from config.settings import Settings
from services.calendar import CalendarProviderChain
from services.sms.telnyx_sms_service import TelnyxSMSService
from .function_base import (
    FunctionDescriptor,
    FunctionContext,
    FunctionResult,
    FunctionNotFound,
    TransientFunctionError,
)
from .builtin_functions import create_builtin_functions
from .dynamic_functions import (
    DynamicFunctionConfig,
    InvalidFunctionConfig,
    build_dynamic_function,
)
from .registry import FunctionRegistry
from .executor import FunctionExecutor

__all__ = [
    'FunctionDescriptor',
    'FunctionContext',
    'FunctionResult',
    'FunctionNotFound',
    'TransientFunctionError',
    'DynamicFunctionConfig',
    'InvalidFunctionConfig',
    'build_dynamic_function',
    'FunctionRegistry',
    'FunctionExecutor',
    'create_function_executor',
]


def create_function_executor(settings: Settings, chain: CalendarProviderChain,
                             sms: TelnyxSMSService) -> FunctionExecutor:
    """
    Factory function to create the executor with all built-ins registered

    Args:
        settings: Application settings
        chain: Calendar provider chain
        sms: SMS sender

    Returns:
        FunctionExecutor over a fresh registry
    """
    registry = FunctionRegistry(create_builtin_functions(chain, sms))
    return FunctionExecutor(
        registry,
        timeout_seconds=settings.function_timeout_seconds,
        max_retries=settings.function_max_retries,
        backoff_seconds=settings.function_backoff_seconds,
    )
