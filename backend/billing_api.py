"""
Async client for the billing platform's customer/subscription API.

- One httpx.AsyncClient per BillingClient (use it as an async context manager)
- Cursor pagination over ``items`` / ``has_more`` / ``next_cursor``
- Retry with backoff on 429, honouring Retry-After
- Raw payloads are validated into the typed input models before they leave
  this module

Example usage:

    async with BillingClient.for_cabinet(cabinet) as client:
        customers = await client.list_customers()
"""
import asyncio
import logging

import httpx

import settings
from schemas import ExternalCustomer, ExternalLine, ExternalSubscription

PAGE_SIZE = 100
MAX_ERROR_DETAIL_CHARS = 500
NO_RETRY_CODES = {401, 403, 404}

logger = logging.getLogger(__name__)


class BillingAPIError(RuntimeError):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# PAYLOAD PARSING
# =============================================================================
def _amount(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _str_or_none(value):
    if value is None or value == '':
        return None
    return str(value)


def parse_customer(raw):
    return ExternalCustomer.model_validate({
        'id': str(raw['id']),
        'name': raw.get('name') or '',
        'reg_no': _str_or_none(raw.get('reg_no')),
        'external_reference': _str_or_none(raw.get('external_reference')),
        'archived': bool(raw.get('archived_at') or raw.get('archived')),
        'emails': [e for e in (raw.get('emails') or []) if e],
    })


def parse_line(raw):
    return ExternalLine.model_validate({
        'id': _str_or_none(raw.get('id')),
        'label': raw.get('label') or '',
        'quantity': _amount(raw.get('quantity')) or 1.0,
        'amount_ht': _amount(raw.get('currency_amount_before_tax')),
        'amount_ttc': _amount(raw.get('amount')),
        'amount_tva': _amount(raw.get('currency_tax')),
        'vat_rate': raw.get('vat_rate'),
        'description': raw.get('description'),
    })


def parse_subscription(raw, lines=()):
    rule = raw.get('recurring_rule') or {}
    invoice = raw.get('customer_invoice_data') or {}
    days = rule.get('day_of_month') or []
    day = days[0] if days else None
    customer = raw.get('customer') or {}
    return ExternalSubscription.model_validate({
        'id': str(raw['id']),
        'customer_id': _str_or_none(customer.get('id')) or '',
        'label': raw.get('label') or '',
        'status': raw.get('status'),
        'frequency': rule.get('rule_type'),
        'interval': rule.get('interval') or 1,
        # -1 means "last day of the month"
        'day_of_month': 31 if day == -1 else day,
        'start': raw.get('start'),
        'finish': raw.get('finish'),
        'mode': raw.get('mode'),
        'payment_conditions': raw.get('payment_conditions'),
        'payment_method': raw.get('payment_method'),
        'total_ht': _amount(invoice.get('currency_amount_before_tax')),
        'total_ttc': _amount(invoice.get('amount')),
        'total_tva': _amount(invoice.get('currency_tax')),
        'lines': [parse_line(l) for l in lines],
    })


# =============================================================================
# CLIENT
# =============================================================================
class BillingClient:
    """Billing API session bound to one cabinet's credential."""

    def __init__(
        self,
        token: str,
        base_url: str = settings.DEFAULT_API_BASE,
        company_id: str = '',
        timeout: float = 30.0,
        max_retries: int = 5,
        request_interval: float = 0.1,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip('/')
        self.company_id = company_id
        self.timeout = timeout
        self.max_retries = max_retries
        self.request_interval = request_interval
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def for_cabinet(cls, cabinet, **kwargs):
        options = {
            'base_url': settings.BILLING_API_BASE,
            'company_id': cabinet.company_id,
            'timeout': settings.BILLING_TIMEOUT,
            'max_retries': settings.BILLING_MAX_RETRIES,
            'request_interval': settings.BILLING_REQUEST_INTERVAL,
        }
        options.update(kwargs)
        return cls(cabinet.token, **options)

    async def __aenter__(self) -> "BillingClient":
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "BillingClient must be used as async context manager: "
                "async with BillingClient(token) as client: ..."
            )
        return self._client

    def _headers(self):
        headers = {
            'Authorization': f'Bearer {self.token}',
            'Accept': 'application/json',
        }
        if self.company_id:
            headers['X-Company-Id'] = self.company_id
        return headers

    async def get(self, endpoint, params=None):
        client = self._get_client()
        url = f'{self.base_url}{endpoint}'

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.get(url, headers=self._headers(), params=params)
            except httpx.TimeoutException as e:
                raise BillingAPIError(f'Timeout on {endpoint}: {e}') from e
            except httpx.RequestError as e:
                raise BillingAPIError(f'Network error on {endpoint}: {type(e).__name__}: {e}') from e

            if response.status_code == 429:
                wait = min(attempt * 2, 10)
                retry_after = response.headers.get('retry-after')
                if retry_after:
                    try:
                        wait = float(retry_after)
                    except ValueError:
                        pass
                logger.warning("[Retry %d/%d] Rate limited on %s, waiting %.1fs",
                               attempt, self.max_retries, endpoint, wait)
                await asyncio.sleep(wait)
                continue

            if response.status_code >= 400:
                detail = response.text[:MAX_ERROR_DETAIL_CHARS]
                if response.status_code in NO_RETRY_CODES:
                    logger.error("Billing API refused %s (%d)", endpoint, response.status_code)
                raise BillingAPIError(
                    f'Billing API error ({response.status_code}) on {endpoint}: {detail}',
                    status_code=response.status_code)

            try:
                return response.json()
            except ValueError as e:
                raise BillingAPIError(
                    f'Invalid JSON on {endpoint}: {response.text[:MAX_ERROR_DETAIL_CHARS]}') from e

        raise BillingAPIError(f'Rate limit still exceeded after {self.max_retries} attempts on {endpoint}',
                              status_code=429)

    async def get_all(self, endpoint, params=None):
        items, cursor, page = [], None, 0
        while True:
            page += 1
            query = dict(params or {}, per_page=PAGE_SIZE)
            if cursor:
                query['cursor'] = cursor
            result = await self.get(endpoint, query)
            items.extend(result.get('items') or [])
            logger.debug("%s page %d: %d items so far", endpoint, page, len(items))
            if result.get('has_more') is False or not result.get('next_cursor'):
                return items
            cursor = result['next_cursor']

    async def list_customers(self):
        return [parse_customer(raw) for raw in await self.get_all('/customers')]

    async def list_subscriptions(self):
        return [parse_subscription(raw) for raw in await self.get_all('/billing_subscriptions')]

    async def list_subscription_lines(self, subscription_id):
        result = await self.get(f'/billing_subscriptions/{subscription_id}/invoice_lines')
        lines = [parse_line(raw) for raw in result.get('items') or []]
        if self.request_interval:
            await asyncio.sleep(self.request_interval)
        return lines
