"""Migration exceptions."""

from typing import Optional


class MigrationError(Exception):
    """Error raised while exporting or importing one service instance."""

    def __init__(self, message: str, instance: Optional[str] = None):
        """Initialize migration error.

        Args:
            message: Error message
            instance: Name of the affected service instance
        """
        super().__init__(message)
        self.instance = instance


class UnsupportedOperationError(MigrationError):
    """Strategy determined that the instance is out of scope."""

    pass


class ImportDirectoryNotFoundError(Exception):
    """Import root directory is missing."""

    def __init__(self, directory: str):
        super().__init__(f'import directory "{directory}" does not exist')
        self.directory = directory
