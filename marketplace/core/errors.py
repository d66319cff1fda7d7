"""Erros de domínio do motor de conversas.

Os serviços levantam estas exceções antes de qualquer escrita; os handlers
registrados em ``marketplace.main`` traduzem cada uma para um status HTTP.
"""

from __future__ import annotations


class MarketplaceError(Exception):
    status_code = 400

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class PermissionDeniedError(MarketplaceError):
    """O papel do usuário não permite a ação (ex.: cliente criando orçamento)."""

    status_code = 403


class InvalidStateError(MarketplaceError):
    """Transição ilegal a partir do estado atual, inclusive quando outra chamada concorrente venceu."""

    status_code = 409


class NotFoundError(MarketplaceError):
    status_code = 404


class ExternalServiceError(MarketplaceError):
    """Gateway de pagamento ou storage indisponível, ou resposta inválida."""

    status_code = 502


class ValidationError(MarketplaceError):
    status_code = 422
