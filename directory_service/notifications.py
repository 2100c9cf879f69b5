"""Invitation delivery."""

from __future__ import annotations

import logging

from .domain.invitation import Invitation

logger = logging.getLogger(__name__)


class LoggingInviteNotifier:
    """Notifier that writes the invite link to the service log instead of sending email."""

    def send_invitation(self, invitation: Invitation, link: str) -> None:
        logger.info(
            "invitation %s for tenant %s ready for delivery: %s",
            invitation.invitation_id,
            invitation.target_tenant_id,
            link,
        )
