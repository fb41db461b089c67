"""Persistent anonymous client identity."""

import logging
import uuid
from pathlib import Path
from typing import Optional

from config import config

logger = logging.getLogger(__name__)


def get_or_create_client_id(path: Optional[str] = None) -> str:
    """
    Read this client's id, creating and saving a new uuid4 on first use.

    Args:
        path: File holding the id. Defaults to config.CLIENT_ID_PATH.
    """
    id_file = Path(path or config.CLIENT_ID_PATH)
    if id_file.exists():
        client_id = id_file.read_text().strip()
        if client_id:
            return client_id

    client_id = str(uuid.uuid4())
    id_file.parent.mkdir(parents=True, exist_ok=True)
    id_file.write_text(client_id)
    logger.info(f"Created client id {client_id} at {id_file}")
    return client_id
