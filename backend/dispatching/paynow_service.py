import logging

from django.conf import settings
from paynow import Paynow

from service_requests.models import SERVICE_CONFIG

logger = logging.getLogger(__name__)


def _setting(name, default):
    return getattr(settings, name, None) or default


class PaynowService:
    """
    Gateway payments for requests in awaiting_payment.
    Dev falls back to the Paynow sandbox ids when the env does not provide real ones.
    """
    def __init__(self):
        self.paynow = Paynow(
            _setting('PAYNOW_INTEGRATION_ID', '99999'),
            _setting('PAYNOW_INTEGRATION_KEY', '12345678'),
            _setting('PAYNOW_RETURN_URL', 'http://localhost:8000/payments/return'),
            _setting('PAYNOW_RESULT_URL', 'http://localhost:8000/payments/result'),
        )

    @staticmethod
    def reference_for(service_request):
        return f'Roadside request {service_request.id}'

    def initiate_payment(self, service_request, email):
        """
        Bill the client the agreed value of the request. The line item is the service label.
        """
        if service_request.agreed_value is None:
            return {'success': False, 'error': "Request has no agreed value"}

        payment = self.paynow.create_payment(self.reference_for(service_request), email)
        label = SERVICE_CONFIG[service_request.service_type].label
        payment.add(label, float(service_request.agreed_value))

        try:
            response = self.paynow.send(payment)
        except Exception as e:
            logger.error("Paynow send failed for request %s: %s", service_request.id, e)
            return {'success': False, 'error': str(e)}

        if not response.success:
            logger.warning("Paynow rejected payment for request %s", service_request.id)
            return {'success': False, 'error': getattr(response, 'error', None) or "Paynow error"}

        logger.info("Paynow payment started for request %s", service_request.id)
        return {
            'success': True,
            'poll_url': response.poll_url,
            'redirect_url': response.redirect_url,
        }

    def check_status(self, poll_url):
        """
        Poll a transaction. Only `paid` moves the request forward.
        """
        status = self.paynow.check_transaction_status(poll_url)
        return {'paid': bool(status.paid), 'status': status.status}
