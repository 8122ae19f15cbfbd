"""
=====================================================
Dynamic AI Calling Platform - Stored Function Loader
=====================================================
Loads active rows of custom_functions into the registry at startup.
"""

import json
from typing import List
from loguru import logger

from services.calendar import CalendarServiceBase
from services.database import get_db_pool
from .dynamic_functions import DynamicFunctionConfig, InvalidFunctionConfig, build_dynamic_function
from .registry import FunctionRegistry


async def fetch_function_configs() -> List[DynamicFunctionConfig]:
    pool = await get_db_pool()
    rows = await pool.fetch(
        "SELECT id, name, description, function_type, api_key, event_type_id, timezone, "
        "parameters, response_template, timeout_seconds, max_retries "
        "FROM custom_functions WHERE is_active = true ORDER BY id"
    )
    configs = []
    for row in rows:
        data = dict(row)
        if isinstance(data.get("parameters"), str):
            data["parameters"] = json.loads(data["parameters"])
        configs.append(DynamicFunctionConfig.from_row(data))
    return configs


def register_dynamic_functions(registry: FunctionRegistry,
                               configs: List[DynamicFunctionConfig],
                               internal: CalendarServiceBase,
                               calendar_timeout: float = 3.0,
                               cache_ttl_seconds: float = 900) -> int:
    """
    Build and register stored functions; invalid rows are skipped

    Returns:
        Number registered
    """
    registered = 0
    for config in configs:
        try:
            function = build_dynamic_function(config, internal, calendar_timeout, cache_ttl_seconds)
        except InvalidFunctionConfig as e:
            logger.error(f"Functions: Skipping '{config.name}': {e}")
            continue
        registry.register_dynamic(function)
        registered += 1

    logger.info(f"Functions: Loaded {registered} custom functions")
    return registered
