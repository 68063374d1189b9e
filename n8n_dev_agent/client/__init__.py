"""n8n HTTP client."""

from n8n_dev_agent.client.config import Settings
from n8n_dev_agent.client.n8n_client import N8nClient, RuntimeNotConfiguredError

__all__ = ["N8nClient", "RuntimeNotConfiguredError", "Settings"]
