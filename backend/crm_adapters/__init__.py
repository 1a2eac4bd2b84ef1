"""
CRM Adapter Factory.
Creates the appropriate adapter based on CRM type and credentials.
"""

from .base import CRMAdapter
from .pipedrive_adapter import PipedriveAdapter


def create_adapter(crm_type: str, credentials: dict, config: dict = None) -> CRMAdapter:
    """
    Factory function to create the appropriate CRM adapter.

    Args:
        crm_type: CRM type string (currently only 'pipedrive')
        credentials: {"api_token": ...}
        config: Optional {"base_url": ...}

    Returns:
        CRMAdapter instance

    Raises:
        ValueError: If CRM type is not supported or credentials are missing
    """
    config = config or {}

    if crm_type == "pipedrive":
        from pipedrive_crm import PipedriveCRMClient
        client = PipedriveCRMClient(
            api_token=credentials.get("api_token", ""),
            base_url=config.get("base_url") or "https://api.pipedrive.com/v1",
        )
        return PipedriveAdapter(client)

    raise ValueError(f"Unsupported CRM type: {crm_type}")


__all__ = [
    "CRMAdapter",
    "PipedriveAdapter",
    "create_adapter",
]
