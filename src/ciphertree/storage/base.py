from abc import ABC, abstractmethod
from typing import List

from ciphertree.utils.dataModels import Share, ShareKey


class ContentStore(ABC):
    """Content-addressed blob store. Only ever sees ciphertext."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        pass

    @abstractmethod
    def get(self, address: str) -> bytes:
        """Raises NotFoundError for an unknown address."""


class ShareStore(ABC):
    """Persistence for share grants and their transitive keys."""

    @abstractmethod
    def add_share(self, share: Share, keys: List[ShareKey]) -> None:
        pass

    @abstractmethod
    def get_share(self, share_id: str) -> Share | None:
        pass

    @abstractmethod
    def list_shares(
        self,
        sharer_id: str | None = None,
        recipient_id: str | None = None,
        pointer_name: str | None = None,
    ) -> List[Share]:
        pass

    @abstractmethod
    def update_share(self, share: Share) -> None:
        pass

    @abstractmethod
    def delete_share(self, share_id: str) -> None:
        """Hard delete, together with the share's keys."""

    @abstractmethod
    def share_keys(self, share_id: str) -> List[ShareKey]:
        pass

    @abstractmethod
    def keys_for_item(self, item_id: str) -> List[ShareKey]:
        pass

    @abstractmethod
    def upsert_share_key(self, key: ShareKey) -> None:
        pass
