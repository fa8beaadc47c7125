"""
auth/mailer.py -- Outbound account email (confirmation, reset, notices).

Mailer is a port: the orchestrator only knows send(template, recipient, **context).
LogMailer is the default adapter. It records that a message would have been
sent and to whom, nothing more. Context values carry one-time links and must
never reach the log.

Templates used by the orchestrator:
  email_confirmation  -- link to GET /api/v1/auth/confirm-email?token=...
  welcome             -- sent after the email is confirmed
  password_reset      -- link to the frontend reset page
  password_changed    -- notice after a successful change
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("portfolio_auth.auth.mailer")


class Mailer(Protocol):
    def send(self, template: str, recipient: str, **context: str) -> None: ...


class LogMailer:
    """Mailer that writes one log line per message instead of delivering it."""

    def send(self, template: str, recipient: str, **context: str) -> None:
        logger.info("Mail '%s' queued for %s", template, recipient)
