"""
Common base for engine adapters.

An engine turns validated settings into an ordered list of producers, one per
scope. The executor handles everything after that.
"""

from typing import Dict, List, Sequence

from dbagent.config import Config
from dbagent.utils.commands import require_tools
from dbagent.backup.sources import Producer


class Engine:
    """
    Base class for engine adapters.

    Subclasses implement tool_names() and producers(); preflight() may check
    connectivity before any scope is processed.
    """

    name = ''

    def __init__(self, settings, config: Config):
        self.settings = settings
        self.config = config
        self.tools: Dict[str, str] = {}

    def tool_names(self) -> Sequence[str]:
        """Executables this engine needs for the configured mode."""
        raise NotImplementedError

    def tool_dirs(self) -> Sequence[str]:
        """Extra directories to search for tools not on PATH."""
        return ()

    def check_tools(self) -> Dict[str, str]:
        """
        Resolve every required tool.

        Raises:
            ToolNotFoundError: If any tool is missing
        """
        self.tools = require_tools(self.tool_names(), self.tool_dirs())
        return self.tools

    def tool(self, name: str) -> str:
        """Resolved path of a tool, or its bare name before check_tools()."""
        return self.tools.get(name, name)

    def preflight(self):
        """Checks run once before the first scope. Raise ProducerError to abort."""
        pass

    def producers(self) -> List[Producer]:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.describe()}>'
