#!/usr/bin/env python3
"""Best-effort operator alerts (mail CLI, SMTP, webhook).

Delivery problems are logged and swallowed: an alert must never be the reason
a capture, cleanup or health check fails.
"""

import json
import logging
import smtplib
import socket
import ssl
import subprocess
import time
from email.message import EmailMessage
from typing import Any, Mapping
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import PLACEHOLDER_RECIPIENT

_log = logging.getLogger("timelapse.notifications")


def _as_int(value: Any, default: int | None = None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if str(v).strip()]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return []


class _SafeDict(dict):
    """Gracefully handle missing keys when formatting templates."""

    def __missing__(self, key: str) -> str:
        return f"{{{key}}}"


class AlertDispatcher:
    """Send alert mails and webhook payloads for pipeline events."""

    def __init__(
        self,
        *,
        recipients: list[str],
        mail_command: str = "mail",
        smtp_cfg: Mapping[str, Any] | None = None,
        webhook_cfg: Mapping[str, Any] | None = None,
        subject_prefix: str = "TIMELAPSE",
    ) -> None:
        self.recipients = recipients
        self.mail_command = mail_command
        self.smtp_cfg = dict(smtp_cfg or {})
        self.webhook_cfg = dict(webhook_cfg or {})
        self.subject_prefix = subject_prefix
        self.hostname = socket.gethostname()

        self.webhook_url = str(self.webhook_cfg.get("url") or "").strip()
        self.webhook_method = (
            str(self.webhook_cfg.get("method", "POST")) or "POST"
        ).upper()
        self.webhook_headers = self._normalise_headers(self.webhook_cfg.get("headers"))
        self.webhook_timeout = float(self.webhook_cfg.get("timeout_sec", 5.0) or 5.0)

    @staticmethod
    def _normalise_headers(headers: Any) -> dict[str, str]:
        if isinstance(headers, Mapping):
            return {
                str(key): str(value)
                for key, value in headers.items()
                if str(key).strip()
            }
        return {}

    def alert(self, subject: str, body: str, *, event: Mapping[str, Any] | None = None) -> None:
        context = _SafeDict(event or {})
        context.setdefault("host", self.hostname)
        payload = {
            "subject": f"{self.subject_prefix} {subject}".strip(),
            "body": body.format_map(context) if event else body,
            "event": dict(event or {}),
            "host": self.hostname,
            "generated_at": time.time(),
        }
        self._dispatch_payload(payload)

    def _dispatch_payload(self, payload: dict[str, Any]) -> None:
        try:
            self._send_webhook(payload)
        except Exception as exc:  # noqa: BLE001 - alerts are fire-and-forget
            _log.warning("webhook dispatch raised unexpected error: %s", exc)

        try:
            self._send_email(payload)
        except Exception as exc:  # noqa: BLE001 - alerts are fire-and-forget
            _log.warning("email dispatch raised unexpected error: %s", exc)

    # --- webhook ---
    def _send_webhook(self, payload: dict[str, Any]) -> None:
        if not self.webhook_url:
            return

        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        request = Request(
            self.webhook_url,
            data=body,
            method=self.webhook_method,
            headers={"Content-Type": "application/json", **self.webhook_headers},
        )

        try:
            with urlopen(request, timeout=self.webhook_timeout) as response:
                response.read()
        except (URLError, OSError) as exc:
            _log.warning("webhook delivery failed: %s", exc)

    # --- email ---
    def _send_email(self, payload: dict[str, Any]) -> None:
        if not self.recipients:
            return
        if str(self.smtp_cfg.get("host") or "").strip():
            self._send_smtp(payload)
        else:
            self._send_mail_command(payload)

    def _send_mail_command(self, payload: dict[str, Any]) -> None:
        cmd = [self.mail_command, "-s", payload["subject"], *self.recipients]
        try:
            proc = subprocess.run(
                cmd,
                input=payload["body"] + "\n",
                capture_output=True,
                text=True,
                check=False,
                timeout=30,
            )
        except FileNotFoundError:
            _log.warning("email delivery failed: %s not installed", self.mail_command)
            return
        except subprocess.SubprocessError as exc:
            _log.warning("email delivery failed: %s", exc)
            return
        if proc.returncode != 0:
            _log.warning(
                "email delivery failed: %s exited %s: %s",
                self.mail_command,
                proc.returncode,
                (proc.stderr or "").strip(),
            )
            return
        _log.info("Alert mailed to %s: %s", ", ".join(self.recipients), payload["subject"])

    def _send_smtp(self, payload: dict[str, Any]) -> None:
        smtp_host = str(self.smtp_cfg.get("host") or "").strip()
        smtp_port = _as_int(self.smtp_cfg.get("port"), 587) or 587
        use_ssl = bool(self.smtp_cfg.get("use_ssl", False))
        use_tls = bool(self.smtp_cfg.get("use_tls", True))
        username = str(self.smtp_cfg.get("username") or "").strip()
        password = self.smtp_cfg.get("password")
        timeout = float(self.smtp_cfg.get("timeout_sec", 10.0) or 10.0)
        sender = str(self.smtp_cfg.get("from") or f"timelapse@{self.hostname}").strip()

        message = EmailMessage()
        message["From"] = sender
        message["To"] = ", ".join(self.recipients)
        message["Subject"] = payload["subject"]
        message.set_content(payload["body"])

        try:
            if use_ssl:
                context = ssl.create_default_context()
                with smtplib.SMTP_SSL(
                    smtp_host, smtp_port, timeout=timeout, context=context
                ) as smtp:
                    self._smtp_login_and_send(smtp, username, password, message)
            else:
                with smtplib.SMTP(smtp_host, smtp_port, timeout=timeout) as smtp:
                    if use_tls:
                        context = ssl.create_default_context()
                        smtp.starttls(context=context)
                    self._smtp_login_and_send(smtp, username, password, message)
        except (smtplib.SMTPException, OSError) as exc:
            _log.warning("email delivery failed: %s", exc)
            return
        _log.info("Alert mailed to %s: %s", ", ".join(self.recipients), payload["subject"])

    @staticmethod
    def _smtp_login_and_send(
        smtp: smtplib.SMTP, username: str, password: Any, message: EmailMessage
    ) -> None:
        if username and password:
            smtp.login(username, password)
        smtp.send_message(message)


def configured_recipients(cfg: Mapping[str, Any] | None) -> list[str]:
    """Recipients from ``alerts.recipient``; the placeholder address counts as unset."""

    if not isinstance(cfg, Mapping):
        return []
    return [
        address
        for address in _as_list(cfg.get("recipient"))
        if address.lower() != PLACEHOLDER_RECIPIENT
    ]


def build_dispatcher(cfg: Mapping[str, Any] | None) -> AlertDispatcher | None:
    if not isinstance(cfg, Mapping):
        return None

    recipients = configured_recipients(cfg)
    webhook_cfg = cfg.get("webhook") if isinstance(cfg.get("webhook"), Mapping) else {}
    if not recipients and not str(webhook_cfg.get("url") or "").strip():
        return None

    smtp_cfg = cfg.get("smtp") if isinstance(cfg.get("smtp"), Mapping) else {}
    return AlertDispatcher(
        recipients=recipients,
        mail_command=str(cfg.get("mail_command") or "mail"),
        smtp_cfg=smtp_cfg,
        webhook_cfg=webhook_cfg,
    )


__all__ = ["AlertDispatcher", "build_dispatcher", "configured_recipients"]
