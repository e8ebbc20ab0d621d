"""
Credential retrieval from user-provided secrets.
"""
import logging
from typing import Dict

from pulp_operator.cluster import ClusterClient
from pulp_operator.errors import MissingCredentialData

logger = logging.getLogger("pulp_operator.credentials")


def retrieve_secret_data(cluster: ClusterClient, name: str, namespace: str,
                         required: bool, *keys: str) -> Dict[str, str]:
    """
    Return ``{key: value}`` for each requested key of secret ``namespace/name``.

    With ``required=True`` a missing secret or a missing key raises
    MissingCredentialData. With ``required=False`` missing keys come back
    as empty strings.
    """
    data = cluster.get_secret_data(name, namespace)
    if data is None:
        if required:
            raise MissingCredentialData(f"Secret {namespace}/{name} not found")
        logger.info(f"Secret {namespace}/{name} not found, optional keys default to empty")
        return {key: "" for key in keys}

    result = {}
    for key in keys:
        if key in data:
            result[key] = data[key]
        elif required:
            raise MissingCredentialData(f"Could not find '{key}' key in {namespace}/{name} secret")
        else:
            logger.info(f"Optional key '{key}' not set in {namespace}/{name} secret")
            result[key] = ""
    return result
