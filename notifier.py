"""
Outbound customer notifications.

``Notifier.send(kind, payload)`` never raises: every failure comes back as a
``NotifyResult`` with ``ok=False`` so callers decide whether it matters.
"""
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional, Tuple

import config
from money import format_eur

logger = logging.getLogger(__name__)


@dataclass
class NotifyResult:
    ok: bool
    error: Optional[str] = None


def _greeting(payload: Dict[str, Any]) -> str:
    name = (payload.get("name") or "").strip()
    return f"Ciao {name}," if name else "Ciao,"


def _welcome(p: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Benvenuto su {config.STORE_NAME}"
    body = (
        f"{_greeting(p)}\n\n"
        f"il tuo account {config.STORE_NAME} e' stato creato.\n"
        f"Puoi accedere da {config.FRONTEND_URL}/login\n"
    )
    return subject, body


def _password_reset(p: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"{config.STORE_NAME} - Recupero password"
    body = (
        f"{_greeting(p)}\n\n"
        "abbiamo ricevuto una richiesta di reimpostazione della password.\n"
        f"Usa questo link entro {config.PASSWORD_RESET_TTL_MIN} minuti:\n"
        f"{p.get('reset_url', '')}\n\n"
        "Se non sei stato tu, ignora questa email.\n"
    )
    return subject, body


def _shipment(p: Dict[str, Any]) -> Tuple[str, str]:
    public_id = p.get("public_id") or ""
    subject = f"{config.STORE_NAME} | Ordine {public_id} spedito"
    lines = [_greeting(p), "", f"il tuo ordine {public_id} e' stato spedito."]
    if p.get("carrier_name"):
        lines.append(f"Corriere: {p['carrier_name']}")
    lines.append(f"Codice tracking: {p.get('tracking_code', '')}")
    lines.append(f"Traccia la spedizione: {p.get('tracking_url', '')}")
    return subject, "\n".join(lines) + "\n"


def _items_text(items) -> str:
    rows = []
    for it in items or []:
        rows.append(f"- {it.get('name', '')} x{it.get('qty', 0)}  {format_eur(it.get('line_total_cents', 0))}")
    return "\n".join(rows)


def _payment_confirmed(p: Dict[str, Any]) -> Tuple[str, str]:
    order = p.get("order") or {}
    public_id = order.get("public_id") or ""
    subject = f"{config.STORE_NAME} - Pagamento confermato {public_id}".strip()
    lines = [_greeting(p), "", f"abbiamo ricevuto il pagamento del tuo ordine {public_id}.", ""]
    items = _items_text(order.get("items"))
    if items:
        lines += [items, ""]
    lines.append(f"Subtotale: {format_eur(order.get('subtotal_cents', 0))}")
    if order.get("discount_cents"):
        label = order.get("discount_label") or "Sconto"
        lines.append(f"{label}: -{format_eur(order['discount_cents'])}")
    lines.append(f"Spedizione: {format_eur(order.get('shipping_cents', 0))}")
    lines.append(f"Totale: {format_eur(order.get('total_cents', 0))}")
    return subject, "\n".join(lines) + "\n"


def _bank_transfer(p: Dict[str, Any]) -> Tuple[str, str]:
    public_id = p.get("public_id") or ""
    subject = f"{config.STORE_NAME} - Istruzioni bonifico {public_id}".strip()
    body = (
        f"{_greeting(p)}\n\n"
        f"per completare l'ordine {public_id} effettua un bonifico di "
        f"{format_eur(p.get('total_cents', 0))} entro {p.get('deadline_hours', config.BANK_DEADLINE_HOURS)} ore.\n\n"
        f"Beneficiario: {p.get('beneficiary', '')}\n"
        f"IBAN: {p.get('iban', '')}\n"
        f"Causale: Ordine {public_id}\n\n"
        "L'ordine verra' spedito alla ricezione del pagamento.\n"
    )
    return subject, body


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    "welcome": _welcome,
    "password_reset": _password_reset,
    "shipment": _shipment,
    "payment_confirmed": _payment_confirmed,
    "bank_transfer_instructions": _bank_transfer,
}


def render(kind: str, payload: Dict[str, Any]) -> Tuple[str, str]:
    template = TEMPLATES.get(kind)
    if template is None:
        raise KeyError(f"unknown notification kind: {kind}")
    return template(payload)


def resolve_recipient(to: Optional[str]) -> Optional[str]:
    if config.MAIL_SAFE_MODE and config.MAIL_TEST_TO:
        return config.MAIL_TEST_TO
    return to


class Notifier:
    def send(self, kind: str, payload: Dict[str, Any]) -> NotifyResult:
        try:
            subject, body = render(kind, payload)
            to = resolve_recipient(payload.get("to"))
            if not to:
                return NotifyResult(False, "missing recipient")
            self.deliver(to, subject, body)
            return NotifyResult(True)
        except Exception as e:
            logger.error("Notification %s failed: %s", kind, e)
            return NotifyResult(False, str(e))

    def deliver(self, to: str, subject: str, body: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Used when no SMTP host is configured."""

    def deliver(self, to: str, subject: str, body: str) -> None:
        logger.info("Email to %s: %s\n%s", to, subject, body)


class SmtpNotifier(Notifier):
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 user: Optional[str] = None, password: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.user = config.SMTP_USER if user is None else user
        self.password = config.SMTP_PASSWORD if password is None else password
        self.timeout = timeout or config.NOTIFY_TIMEOUT_SECONDS

    def deliver(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = config.MAIL_FROM
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with server:
            if self.port != 465:
                server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.send_message(msg)


def get_notifier() -> Notifier:
    if config.SMTP_HOST:
        return SmtpNotifier()
    return LogNotifier()
