import logging
import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from blogpay.core.config import settings


class EmailDeliveryError(Exception):
    pass


async def send_brevo_email(to_email: str, subject: str, html_content: str, to_name: str = None):
    """
    Sends a transactional email using Brevo API.
    Raises EmailDeliveryError so the side-effect queue can retry the job.
    """
    if not settings.BREVO_API_KEY:
        raise EmailDeliveryError("BREVO_API_KEY is not configured")

    configuration = sib_api_v3_sdk.Configuration()
    configuration.api_key['api-key'] = settings.BREVO_API_KEY

    api_client = sib_api_v3_sdk.ApiClient(configuration)
    transactional_api = sib_api_v3_sdk.TransactionalEmailsApi(api_client)

    # Pengirim default bila DEFAULT_SENDER_EMAIL kosong
    sender_email = settings.DEFAULT_SENDER_EMAIL if settings.DEFAULT_SENDER_EMAIL else "noreply@blogplatform.id"
    sender_name = getattr(settings, 'APP_NAME', 'Blog Platform')

    to_recipient = [{"email": to_email, "name": to_name or to_email}]

    send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
        to=to_recipient,
        subject=subject,
        html_content=html_content,
        sender={"email": sender_email, "name": sender_name},
    )

    try:
        response = transactional_api.send_transac_email(send_smtp_email)
        logging.info(f"Email sent successfully to {to_email}. Response: {response}")
    except ApiException as e:
        logging.error(f"Exception when calling Brevo API to send email to {to_email}: {e}")
        raise EmailDeliveryError(f"Brevo rejected the email: {e.reason}") from e
    except Exception as e:
        logging.error(f"An unexpected error occurred while sending email to {to_email}: {e}")
        raise EmailDeliveryError("Unexpected error while sending email") from e
