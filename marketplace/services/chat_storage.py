from __future__ import annotations

import asyncio
import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from marketplace.core.config import CHAT_PUBLIC_BASE_URL, CHAT_STORAGE, CHAT_UPLOADS_DIR
from marketplace.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass
class StoredFile:
    url: str
    key: str
    size: int


class ChatStorage(Protocol):
    async def save(self, *, conversation_id: int, filename: str, content_type: str, data: bytes) -> StoredFile:
        ...


def _get_required_env(var_name: str) -> str:
    value = os.getenv(var_name, "").strip()
    if not value:
        raise RuntimeError(f"Variável de ambiente obrigatória ausente: {var_name}")
    return value


def _object_key(conversation_id: int, filename: str) -> str:
    extension = Path(filename or "").suffix.lower()
    return f"chat-files/{conversation_id}/{uuid4().hex}{extension}"


class LocalChatStorage:
    def __init__(self, root: str | Path = CHAT_UPLOADS_DIR, public_base_url: str = CHAT_PUBLIC_BASE_URL) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    async def save(self, *, conversation_id: int, filename: str, content_type: str, data: bytes) -> StoredFile:
        key = _object_key(conversation_id, filename)
        relative = key.split("/", 1)[1]
        path = self.root / relative
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            logger.exception("chat file write failed", extra={"conversation_id": conversation_id})
            raise ExternalServiceError("Falha ao salvar arquivo") from exc
        return StoredFile(url=f"{self.public_base_url}/{relative}", key=key, size=len(data))

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as buffer:
            buffer.write(data)


class R2ChatStorage:
    """Bucket S3-compatível (Cloudflare R2). O boto3 é bloqueante, então roda em thread."""

    def __init__(self) -> None:
        self.bucket = _get_required_env("R2_BUCKET_NAME")
        self.public_url = _get_required_env("R2_PUBLIC_URL").rstrip("/")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import boto3

            account_id = _get_required_env("R2_ACCOUNT_ID")
            self._client = boto3.client(
                "s3",
                endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
                aws_access_key_id=_get_required_env("R2_ACCESS_KEY_ID"),
                aws_secret_access_key=_get_required_env("R2_SECRET_ACCESS_KEY"),
                region_name="auto",
            )
        return self._client

    async def save(self, *, conversation_id: int, filename: str, content_type: str, data: bytes) -> StoredFile:
        key = _object_key(conversation_id, filename)
        client = self._get_client()
        try:
            await asyncio.to_thread(
                client.upload_fileobj,
                io.BytesIO(data),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type or "application/octet-stream"},
            )
        except Exception as exc:
            logger.exception("R2 upload failed", extra={"conversation_id": conversation_id})
            raise ExternalServiceError("Falha ao enviar arquivo") from exc
        return StoredFile(url=f"{self.public_url}/{key}", key=key, size=len(data))


def build_chat_storage(name: str | None = None) -> ChatStorage:
    selected = (name or CHAT_STORAGE).strip().lower()
    if selected == "r2":
        return R2ChatStorage()
    return LocalChatStorage()
