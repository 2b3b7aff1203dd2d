"""Service interface contracts (ABCs)"""

from datagate.services.interfaces.entity_client import IEntityClient
from datagate.services.interfaces.file_store import IFileStore

__all__ = [
    'IEntityClient',
    'IFileStore',
]
