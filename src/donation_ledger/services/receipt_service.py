import io
import logging
from botocore.exceptions import ClientError
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

logger = logging.getLogger(__name__)

RECEIPT_PREFIX = "receipts/"


def render_receipt_pdf(donor_name: str, amount: str, currency: str, donation_type: str,
                       donation_id: str, payment_method: str, created_at: str,
                       organization: str = "Donation Receipt") -> bytes:
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4

    pdf.setTitle(f"Donation receipt {donation_id}")
    pdf.setFont("Helvetica-Bold", 20)
    pdf.drawString(50, height - 80, organization)

    pdf.setFont("Helvetica", 12)
    rows = [
        ("Donor", donor_name),
        ("Amount", f"{amount} {currency}"),
        ("Donation type", donation_type),
        ("Payment method", payment_method),
        ("Date", created_at),
        ("Receipt number", donation_id),
    ]
    y = height - 140
    for label, value in rows:
        pdf.drawString(50, y, f"{label}:")
        pdf.drawString(200, y, str(value))
        y -= 24

    pdf.setFont("Helvetica-Oblique", 10)
    pdf.drawString(50, y - 30, "Thank you for your generosity.")
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


class ReceiptService:
    def __init__(self, s3_client, bucket: str):
        self.s3_client = s3_client
        self.bucket = bucket

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=4),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(ClientError),
        reraise=True
    )
    def _upload(self, key: str, body: bytes):
        self.s3_client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType="application/pdf"
        )

    def generate_receipt(self, donation_id: str, donor_name: str, amount: str, currency: str,
                         donation_type: str, payment_method: str, created_at: str) -> str:
        """Renders the PDF receipt and stores it; returns the S3 key."""
        pdf_bytes = render_receipt_pdf(
            donor_name=donor_name,
            amount=amount,
            currency=currency,
            donation_type=donation_type,
            donation_id=donation_id,
            payment_method=payment_method,
            created_at=created_at,
        )
        key = f"{RECEIPT_PREFIX}{donation_id}.pdf"
        self._upload(key, pdf_bytes)
        logger.info(f"Stored receipt {key} ({len(pdf_bytes)} bytes)")
        return key
