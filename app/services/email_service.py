import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional, Dict, List
from decimal import Decimal
import logging

logger = logging.getLogger(__name__)


DOCUMENT_LABELS = {
    "quote": "Quotation",
    "sales_order": "Sales Order",
    "invoice": "Invoice",
    "eway_bill": "E-Way Bill",
}


class EmailService:
    """Email service for order notifications via SMTP."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Buildmart Orders"
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send an email over SMTP with STARTTLS.

        Returns:
            True if email sent successfully, False otherwise
        """
        if not self.is_configured:
            logger.warning("Email not configured. SMTP credentials missing.")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            if text_content:
                msg.attach(MIMEText(text_content, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info(f"Email sent successfully to {to_email}")
            return True

        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP Authentication failed. Check email credentials.")
            return False
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            return False
        except TimeoutError:
            logger.error("SMTP connection timed out")
            return False
        except OSError as e:
            logger.error(f"Network error sending email: {e}")
            return False

    def send_order_placed_email(
        self,
        to_email: str,
        lead_id: str,
        invoice_number: str,
        items: List[Dict],
        delivery_address: str,
        delivery_charges: Decimal,
        expected_delivery: Optional[str] = None,
    ) -> bool:
        subject = f"Order {lead_id} placed"

        rows = "".join(
            f"<tr><td>{item['item_reference']}</td><td>{item['category']}</td>"
            f"<td style='text-align:right'>{item['quantity']}</td></tr>"
            for item in items
        )
        html_content = f"""
        <html>
        <body style="font-family: Arial, sans-serif;">
            <h2>Thank you for your order</h2>
            <p>Order <strong>{lead_id}</strong> (invoice {invoice_number}) has been sent to the vendor for acceptance.</p>
            <table cellpadding="6" border="1" style="border-collapse: collapse;">
                <tr><th>Item</th><th>Category</th><th>Quantity</th></tr>
                {rows}
            </table>
            <p>Delivery charges: &#8377;{delivery_charges}</p>
            <p>Deliver to: {delivery_address}</p>
            {f"<p>Expected delivery: {expected_delivery}</p>" if expected_delivery else ""}
        </body>
        </html>
        """
        text_content = (
            f"Order {lead_id} (invoice {invoice_number}) has been placed.\n"
            f"Delivery charges: Rs.{delivery_charges}\n"
            f"Deliver to: {delivery_address}\n"
        )
        return self.send_email(to_email, subject, html_content, text_content)

    def send_document_email(
        self,
        to_email: str,
        lead_id: str,
        document_type: str,
        document_id: str,
    ) -> bool:
        label = DOCUMENT_LABELS.get(document_type, document_type)
        subject = f"{label} for order {lead_id}"
        html_content = f"""
        <html>
        <body style="font-family: Arial, sans-serif;">
            <p>Your {label.lower()} for order <strong>{lead_id}</strong> is ready.</p>
            <p>Reference: {document_id}</p>
        </body>
        </html>
        """
        text_content = f"Your {label.lower()} for order {lead_id} is ready. Reference: {document_id}"
        return self.send_email(to_email, subject, html_content, text_content)


def get_email_service() -> EmailService:
    """Get configured email service instance."""
    from app.config import settings

    return EmailService(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
    )
