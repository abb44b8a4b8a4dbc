"""
Storage Interface - Abstract base class for all storage implementations.
This interface enables switching between the local filesystem and other backends.
"""

from abc import ABC, abstractmethod
from typing import Optional, List


class StorageInterface(ABC):
    """
    Abstract storage interface that defines the contract for all storage implementations.
    Implementations report failures through their return values rather than raising,
    so callers decide how a failed write is surfaced.
    """

    @abstractmethod
    async def save(self, path: str, content: bytes | str) -> bool:
        """
        Save content to the specified path, replacing any previous content.

        Implementations must never leave a partially written record behind:
        either the new content is fully visible or the old content remains.

        Args:
            path: Relative path where content should be saved (e.g., "sessions/<id>.json")
            content: Content to save (bytes or str)

        Returns:
            bool: True if save was successful, False otherwise
        """
        pass

    @abstractmethod
    async def load(self, path: str) -> Optional[bytes]:
        """
        Load content from the specified path.

        Args:
            path: Relative path to load from

        Returns:
            Optional[bytes]: File content as bytes, or None if file doesn't exist
        """
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """
        Check if a file exists at the specified path.

        Args:
            path: Relative path to check

        Returns:
            bool: True if file exists, False otherwise
        """
        pass

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """
        Delete file at the specified path.

        Args:
            path: Relative path to delete

        Returns:
            bool: True if the file is gone afterwards (including when it never existed),
            False if deletion failed
        """
        pass

    @abstractmethod
    async def list(
        self,
        path: str,
        pattern: Optional[str] = None,
    ) -> List[str]:
        """
        List files in the specified directory.

        Args:
            path: Directory path to list
            pattern: Optional glob pattern to filter files (e.g., "*.json")

        Returns:
            List[str]: Sorted list of relative file paths
        """
        pass
