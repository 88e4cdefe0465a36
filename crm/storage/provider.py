from typing import BinaryIO, Optional


class StorageProvider:
    def save(self, src: BinaryIO, key: str, max_bytes: Optional[int] = None) -> int:
        raise NotImplementedError

    def path_for(self, key: str):
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class FileTooLarge(Exception):
    pass
