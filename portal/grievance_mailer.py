# Notification dispatch for the grievance desk (SMTP, fire-and-forget)

import html as html_lib
import logging
import smtplib
from concurrent.futures import Executor, Future
from datetime import datetime, timezone, timedelta
from email.message import EmailMessage
from typing import List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

IST = timezone(timedelta(hours=5, minutes=30))

Recipients = Union[str, Sequence[str]]


class MailNotifier:
    """Sends HTML mail through SMTP on a worker thread so callers never wait on the provider."""

    def __init__(self, host: Optional[str], port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, sender: Optional[str] = None,
                 use_tls: bool = True, executor: Optional[Executor] = None, timeout: int = 10):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.use_tls = use_tls
        self.executor = executor
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def send(self, to: Recipients, subject: str, html: str) -> Optional[Future]:
        recipients = [to] if isinstance(to, str) else [r for r in to if r]
        if not recipients:
            return None
        if not self.is_configured:
            logger.warning("SMTP not configured; skipping '%s' to %s", subject, ", ".join(recipients))
            return None
        if self.executor is None:
            self._deliver(recipients, subject, html)
            return None
        return self.executor.submit(self._deliver, recipients, subject, html)

    def _deliver(self, recipients: List[str], subject: str, html: str) -> bool:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(recipients)
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except Exception as e:
            logger.error("Email '%s' to %s failed: %s", subject, ", ".join(recipients), e)
            return False
        logger.info("Email '%s' sent to %s", subject, ", ".join(recipients))
        return True


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------
def _esc(value) -> str:
    return html_lib.escape(str(value)) if value not in (None, "") else ""

def _stamp(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now(timezone.utc)).astimezone(IST).strftime("%d %b %Y, %I:%M %p")

_NOTE = ('<div style="background: #fef3c7; padding: 15px; border-radius: 8px; '
         'border: 1px solid #f59e0b; color: #92400e; margin-top: 10px;">{}</div>')


def verification_requested_email(student_name: Optional[str], category: Optional[str],
                                 remarks: Optional[str], window_hours: int) -> Tuple[str, str]:
    subject = f"Grievance Resolved - Please Verify ({category})"
    body = (
        f"<h2 style=\"color: #2563eb;\">Resolution proposed</h2>"
        f"<p>Dear {_esc(student_name) or 'Student'},</p>"
        f"<p>Your grievance filed under <strong>{_esc(category)}</strong> has been marked as resolved.</p>"
        f"<p><strong>Remarks:</strong> {_esc(remarks) or 'No remarks provided'}</p>"
        + _NOTE.format(f"Please log in within <strong>{window_hours} hours</strong> to accept or reject "
                       f"this resolution.")
    )
    return subject, body

def resolution_accepted_email(category: Optional[str], grievance_id: Optional[str]) -> Tuple[str, str]:
    subject = f"Resolution Accepted - {category}"
    body = (
        f"<p>The student has accepted your resolution for grievance <strong>{_esc(grievance_id)}</strong> "
        f"({_esc(category)}).</p><p>The grievance is now closed.</p>"
    )
    return subject, body

def resolution_rejected_email(category: Optional[str], grievance_id: Optional[str],
                              feedback: Optional[str]) -> Tuple[str, str]:
    subject = f"Resolution Rejected - {category}"
    body = (
        f"<p>The student has rejected the resolution for grievance <strong>{_esc(grievance_id)}</strong> "
        f"({_esc(category)}). It has been reopened as Pending.</p>"
        f"<p><strong>Student feedback:</strong> {_esc(feedback) or 'No feedback given'}</p>"
    )
    return subject, body

def extension_outcome_email(category: Optional[str], outcome: str,
                            deadline: Optional[datetime]) -> Tuple[str, str]:
    subject = f"Extension Request {outcome} - {category}"
    deadline_line = (f"<p><strong>Current deadline:</strong> {deadline.strftime('%d %b %Y')}</p>"
                     if deadline else "")
    body = (
        f"<p>Your deadline extension request for a <strong>{_esc(category)}</strong> grievance "
        f"has been <strong>{_esc(outcome.lower())}</strong>.</p>{deadline_line}"
    )
    return subject, body

def promotion_email(staff_name: str, role: str, department: str, staff_id: str) -> Tuple[str, str]:
    subject = f"Promotion Notification - {role}"
    body = (
        f"<h2 style=\"color: #2563eb;\">Congratulations!</h2>"
        f"<p>Dear {_esc(staff_name)},</p>"
        f"<p>You have been promoted to <strong>{_esc(role)}</strong> for <strong>{_esc(department)}</strong>.</p>"
        f"<p><strong>Date &amp; Time:</strong> {_stamp()}</p>"
        f"<p><strong>Staff ID:</strong> {_esc(staff_id)}</p>"
        + _NOTE.format("Please log out and log in again to see your new dashboard.")
    )
    return subject, body

def demotion_email(staff_name: str, department: str,
                   displaced_by_new_head: bool = False) -> Tuple[str, str]:
    subject = f"Role Update - {department}"
    reason = " as a new Admin has been appointed" if displaced_by_new_head else ""
    body = (
        f"<h2 style=\"color: #64748b;\">Role Update Notification</h2>"
        f"<p>Dear {_esc(staff_name)},</p>"
        f"<p>Your administrative responsibilities for <strong>{_esc(department)}</strong> "
        f"have been concluded{reason}.</p>"
        f"<p>You have been reassigned as a <strong>General Staff</strong> member.</p>"
        f"<p><strong>Date &amp; Time:</strong> {_stamp()}</p>"
        + _NOTE.format("Please use the <strong>Staff</strong> option to log in from now on.")
    )
    return subject, body
