#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

from marketplace.core.database import SessionLocal, engine  # noqa: E402
from marketplace.core.logging_setup import configure_logging  # noqa: E402
from marketplace.integrations.pix_gateway import build_pix_gateway  # noqa: E402
from marketplace.services.appointments import send_appointment_reminders  # noqa: E402
from marketplace.services.payments import PaymentCoordinator  # noqa: E402
from marketplace.services.quotes import expire_overdue_quotes  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rotinas periódicas do motor de conversas.")
    parser.add_argument("--expire-quotes", action="store_true", help="Expira orçamentos pendentes vencidos")
    parser.add_argument(
        "--reconcile-payments",
        action="store_true",
        help="Confirma pagamentos PIX pagos que não foram observados",
    )
    parser.add_argument(
        "--send-reminders",
        action="store_true",
        help="Envia lembretes de agendamentos confirmados",
    )
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    run_all = not (args.expire_quotes or args.reconcile_payments or args.send_reminders)
    try:
        if args.expire_quotes or run_all:
            async with SessionLocal() as db:
                expired = await expire_overdue_quotes(db)
            print(f"Orçamentos expirados: {expired}")

        if args.reconcile_payments or run_all:
            coordinator = PaymentCoordinator(SessionLocal, build_pix_gateway())
            confirmed = await coordinator.reconcile_pending_payments()
            print(f"Pagamentos confirmados: {confirmed}")

        if args.send_reminders or run_all:
            async with SessionLocal() as db:
                reminders = await send_appointment_reminders(db)
            print(f"Lembretes enviados: {reminders}")
    finally:
        await engine.dispose()
    return 0


def main() -> int:
    configure_logging()
    return asyncio.run(run(parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
