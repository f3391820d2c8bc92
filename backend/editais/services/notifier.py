"""Outbound user notifications."""

from typing import Protocol

import structlog

from editais.models.entitlements import Tier

logger = structlog.get_logger(__name__)

PLAN_DISPLAY_NAMES: dict[Tier, str] = {
    Tier.ROLE: "Plano Cargo",
    Tier.DOCUMENT: "Plano Edital",
    Tier.UNLIMITED: "Plano Anual",
    Tier.TRIAL: "Teste Gratuito",
}


class Notifier(Protocol):
    """Delivery contract for transactional messages."""

    async def send_plan_confirmation(self, *, user_id: str, email: str | None, tier: Tier) -> None:
        """Tell the user a plan was activated."""


class LoggingNotifier:
    """Writes confirmation messages to the log instead of sending email."""

    async def send_plan_confirmation(self, *, user_id: str, email: str | None, tier: Tier) -> None:
        plan_name = PLAN_DISPLAY_NAMES.get(tier, "Plano")
        logger.info(
            "plan_confirmation_sent",
            user_id=user_id,
            email=email,
            subject=f"Confirmação de Assinatura: {plan_name}",
        )
