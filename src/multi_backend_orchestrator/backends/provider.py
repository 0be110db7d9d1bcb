"""Abstract base class for backends."""

from abc import ABC, abstractmethod
from pathlib import Path


class Backend(ABC):
    """Abstract base class for backends.

    A backend is a slow, fallible text producer (a CLI agent, a REST endpoint,
    an SDK). The workflow engine only depends on this interface.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier steps use to refer to this backend."""
        pass

    @abstractmethod
    async def query(self, prompt: str, working_directory: Path) -> str:
        """Send a prompt and return the response text.

        Args:
            prompt: The fully rendered prompt.
            working_directory: Directory the backend should operate in.

        Returns:
            The response text.

        Raises:
            BackendError: With kind `unavailable`, `timeout`, `process_error`
                or `api_error`.
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Return whether the backend can be queried right now.

        Returns:
            True if the backend looks usable.
        """
        pass
