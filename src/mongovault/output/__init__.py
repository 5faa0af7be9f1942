"""
Output endpoints for mongovault backups.

Usage:
    from mongovault.output import FileOutput

    output = FileOutput("/backups/mydb", clean=True)
"""

from mongovault.output.base import OutputEndpoint, RestoreEndpoint
from mongovault.output.file import FileOutput, make_directory

__all__ = [
    "OutputEndpoint",
    "RestoreEndpoint",
    "FileOutput",
    "make_directory",
]
