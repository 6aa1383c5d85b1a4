"""
Staff alert service.

Sends an SMS to the clinic's staff line when the voice agent hands a
caller over to a human.
"""

import logging
from typing import Any, Dict, Optional

import requests
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from ..core.config import settings
from ..core.security import mask_phone


logger = logging.getLogger(__name__)


def transfer_alert_body(clinic_name: str, reason: str, summary: str, patient_name: Optional[str]) -> str:
    return (
        f"URGENT: Call transfer incoming from {clinic_name}\n"
        f"Reason: {reason}\n"
        f"Summary: {summary}\n"
        f"Patient: {patient_name or 'Unknown'}"
    )


class StaffAlertService:
    """Service for texting staff about incoming transfers."""

    def __init__(self, client: Optional[Client] = None):
        self.from_number = settings.twilio_phone_number
        self.messaging_service_sid = settings.twilio_messaging_service_sid

        if client is not None:
            self.client = client
        elif settings.twilio_account_sid and settings.twilio_auth_token:
            self.client = Client(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=settings.twilio_request_timeout),
            )
        else:
            self.client = None
            logger.warning("Twilio credentials not configured - staff alerts disabled")

    def send_transfer_alert(
        self,
        to_number: str,
        clinic_name: str,
        reason: str,
        summary: str,
        patient_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Text the staff line about an incoming transfer.

        An alert that cannot be sent never blocks the transfer itself.

        Returns:
            Dict with success status and message SID or error
        """
        if not self.client:
            return {"success": False, "error": "Twilio not configured"}

        if not to_number.startswith("+"):
            to_number = f"+1{to_number}"

        params: Dict[str, Any] = {
            "to": to_number,
            "body": transfer_alert_body(clinic_name, reason, summary, patient_name),
        }
        if self.messaging_service_sid:
            params["messaging_service_sid"] = self.messaging_service_sid
        elif self.from_number:
            params["from_"] = self.from_number
        else:
            logger.warning("No Twilio sender configured - staff alert not sent")
            return {"success": False, "error": "No sender configured"}

        try:
            message = self.client.messages.create(**params)
        except TwilioRestException as e:
            logger.error(f"Twilio error sending staff alert to {mask_phone(to_number)}: {e.msg} (Code: {e.code})")
            return {"success": False, "error": e.msg, "error_code": e.code}
        except (TwilioException, requests.RequestException) as e:
            logger.error(f"Staff alert to {mask_phone(to_number)} not sent: {type(e).__name__}")
            return {"success": False, "error": type(e).__name__}

        logger.info(f"Staff alert sent to {mask_phone(to_number)} (SID: {message.sid})")
        return {"success": True, "message_sid": message.sid}
