"""Example built-ins, loaded with TIMETABLE_BUILTINS_MODULE=handlers."""

import logging

import aiohttp

from async_timetable.registry import builtin_registry

logger = logging.getLogger(__name__)


@builtin_registry.builtin(
    "Webhook",
    schema={
        "type": "object",
        "required": ["url"],
        "properties": {
            "url": {"type": "string", "pattern": "^https?://"},
            "method": {"enum": ["GET", "POST"]},
            "data": {"type": "object"},
        },
        "additionalProperties": False,
    },
)
async def webhook(ctx, params):
    """Call an HTTP endpoint once per parameter row."""
    method = params.get("method", "POST")
    logger.info(f"Task {ctx['task'].task_id}: {method} {params['url']}")
    async with aiohttp.ClientSession() as session:
        async with session.request(method, params["url"], json=params.get("data")) as response:
            response.raise_for_status()


@builtin_registry.builtin("Greet", schema={"type": "string", "minLength": 1})
async def greet(ctx, name):
    """Log a greeting for the chain."""
    logger.info(f"Hello {name} from chain {ctx['chain'].chain_name}")
