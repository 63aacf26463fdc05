"""OpenStack session creation.

Credentials come from the clouds.yaml entry named by OS_CLOUD; nothing here
reads passwords or tokens directly. The returned connection is handed to each
reconciler explicitly, there is no module-level client.
"""

from __future__ import annotations

import logging

import openstack
from openstack.connection import Connection

from .exceptions import backend_call

logger = logging.getLogger(__name__)


def create_connection(cloud: str) -> Connection:
    """Open a connection to the named cloud.

    Args:
        cloud: Entry in clouds.yaml.

    Raises:
        BackendError: If the cloud entry is missing or invalid.
    """
    logger.info("Connecting to OpenStack", extra={"cloud": cloud})
    with backend_call(f"connecting to cloud {cloud}"):
        conn = openstack.connect(cloud=cloud)
    logger.info("Connected to OpenStack", extra={"cloud": cloud})
    return conn
