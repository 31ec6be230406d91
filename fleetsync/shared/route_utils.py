import uuid

from fastapi import HTTPException
from loguru import logger

from fleetsync.shared.errors import UnknownResourceError
from fleetsync.shared.models import ResourceType


async def extract_client_id(client_id: str | None) -> str:
    """
    If the dashboard provided a client_id, use it.
    If not, generate a short readable one like 'client-a3f2' so anonymous
    tabs are still distinguishable in the logs.
    """
    if client_id:
        return client_id
    return f"client-{uuid.uuid4().hex[:4]}"


async def log_connection(protocol: str, client_id: str, extra: dict | None = None) -> None:
    """One structured log line per connect and per disconnect."""
    log_str = f"protocol={protocol} client_id={client_id}"
    for k, v in (extra or {}).items():
        log_str += f" {k}={v}"
    logger.info(log_str)


def resource_or_404(name: str, reports: bool) -> ResourceType:
    """Resolves a path parameter to a model type (reports=False) or a report kind."""
    try:
        resource_type = ResourceType.from_name(name)
    except UnknownResourceError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    if resource_type.is_report != reports:
        raise HTTPException(status_code=404, detail=f"Unknown resource '{name}'")
    return resource_type
