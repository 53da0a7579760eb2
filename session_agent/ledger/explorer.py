"""Explorer links for submitted transactions."""
from dataclasses import dataclass
from typing import Optional

from session_agent.constants import DEFAULT_DURABLE_EXPLORER_URL, DEFAULT_EXECUTION_EXPLORER_URL


@dataclass(frozen=True)
class ExplorerLinks:
    durable_template: str = DEFAULT_DURABLE_EXPLORER_URL
    execution_template: str = DEFAULT_EXECUTION_EXPLORER_URL

    def durable(self, signature: Optional[str]) -> Optional[str]:
        return self.durable_template.format(signature=signature) if signature else None

    def execution(self, signature: Optional[str]) -> Optional[str]:
        return self.execution_template.format(signature=signature) if signature else None
