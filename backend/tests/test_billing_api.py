"""
Billing API client over httpx.MockTransport:
- cursor pagination and auth headers
- 429 backoff / Retry-After
- error mapping to BillingAPIError
- payload parsing into the typed input models
"""
import asyncio
import json

import httpx
import pytest

import billing_api
from billing_api import BillingAPIError, BillingClient, parse_customer, parse_line, parse_subscription

BASE = 'https://billing.test/api'


def call(handler, fn, **kwargs):
    async def go():
        async with BillingClient('tok', BASE, transport=httpx.MockTransport(handler),
                                 request_interval=0, **kwargs) as c:
            return await fn(c)
    return asyncio.run(go())


@pytest.fixture
def sleeps(monkeypatch):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr(billing_api.asyncio, 'sleep', fake_sleep)
    return waits


class TestPagination:
    def test_follows_cursor(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            if 'cursor' not in request.url.params:
                return httpx.Response(200, json={'items': [{'id': 1, 'name': 'A'}], 'has_more': True,
                                                  'next_cursor': 'abc'})
            return httpx.Response(200, json={'items': [{'id': 2, 'name': 'B'}], 'has_more': False,
                                              'next_cursor': None})

        customers = call(handler, lambda c: c.list_customers())
        assert [c.id for c in customers] == ['1', '2']
        assert seen[0]['per_page'] == '100'
        assert seen[1]['cursor'] == 'abc'

    def test_auth_headers(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={'items': [], 'has_more': False})

        call(handler, lambda c: c.list_subscriptions(), company_id='42')
        assert seen['authorization'] == 'Bearer tok'
        assert seen['x-company-id'] == '42'

    def test_subscription_lines(self):
        def handler(request):
            assert request.url.path == '/api/billing_subscriptions/S-1/invoice_lines'
            return httpx.Response(200, json={'items': [
                {'id': 7, 'label': 'Bilan', 'currency_amount_before_tax': '400.00', 'amount': '480.00'}]})

        lines = call(handler, lambda c: c.list_subscription_lines('S-1'))
        assert [(l.id, l.amount_ht, l.amount_ttc) for l in lines] == [('7', 400.0, 480.0)]


class TestRetries:
    def test_honours_retry_after(self, sleeps):
        responses = [httpx.Response(429, headers={'Retry-After': '3'}),
                     httpx.Response(200, json={'items': [], 'has_more': False})]

        result = call(lambda request: responses.pop(0), lambda c: c.get('/customers'))
        assert result == {'items': [], 'has_more': False}
        assert sleeps == [3.0]

    def test_backoff_without_header(self, sleeps):
        responses = [httpx.Response(429), httpx.Response(429),
                     httpx.Response(200, json={'ok': True})]
        call(lambda request: responses.pop(0), lambda c: c.get('/customers'))
        assert sleeps == [2, 4]

    def test_gives_up(self, sleeps):
        with pytest.raises(BillingAPIError) as exc:
            call(lambda request: httpx.Response(429), lambda c: c.get('/customers'), max_retries=2)
        assert exc.value.status_code == 429
        assert len(sleeps) == 2


class TestErrors:
    def test_unauthorized_is_not_retried(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text='bad token')

        with pytest.raises(BillingAPIError) as exc:
            call(handler, lambda c: c.get('/customers'))
        assert exc.value.status_code == 401
        assert 'bad token' in str(exc.value)
        assert len(calls) == 1 and sleeps == []

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        with pytest.raises(BillingAPIError, match='Network error'):
            call(handler, lambda c: c.get('/customers'))

    def test_invalid_json(self):
        with pytest.raises(BillingAPIError, match='Invalid JSON'):
            call(lambda request: httpx.Response(200, text='<html>'), lambda c: c.get('/customers'))

    def test_requires_context_manager(self):
        with pytest.raises(RuntimeError):
            asyncio.run(BillingClient('tok', BASE).get('/customers'))


class TestParsing:
    def test_subscription(self):
        raw = json.loads('''{
            "id": 12, "label": "Forfait", "status": "in_progress", "customer": {"id": 99},
            "recurring_rule": {"rule_type": "monthly", "interval": 3, "day_of_month": [-1]},
            "customer_invoice_data": {"currency_amount_before_tax": "100.50", "amount": "120.60",
                                      "currency_tax": "20.10"},
            "start": "2024-01-01", "payment_method": "transfer"
        }''')
        sub = parse_subscription(raw, [{'id': 1, 'label': 'Bilan', 'currency_amount_before_tax': '100.50'}])
        assert (sub.id, sub.customer_id) == ('12', '99')
        assert (sub.frequency, sub.interval, sub.day_of_month) == ('monthly', 3, 31)
        assert (sub.total_ht, sub.total_ttc, sub.total_tva) == (100.5, 120.6, 20.1)
        assert sub.lines[0].amount_ht == 100.5

    def test_null_customer_is_not_a_customer_id(self):
        import engine
        subs = [parse_subscription({'id': 1, 'status': 'in_progress', 'customer': {'id': None}}),
                parse_subscription({'id': 2, 'status': 'in_progress', 'customer': None})]
        assert [s.customer_id for s in subs] == ['', '']
        assert engine.subscribed_customer_ids(subs) == set()

    def test_unknown_status_is_rejected(self):
        from pydantic import ValidationError
        with pytest.raises(ValidationError):
            parse_subscription({'id': 1, 'status': 'paused', 'customer': {'id': 2}})

    def test_customer(self):
        c = parse_customer({'id': 5, 'name': 'Acme', 'reg_no': '', 'external_reference': 'R1',
                            'archived_at': '2024-02-01', 'emails': ['a@acme.fr', None]})
        assert (c.id, c.reg_no, c.external_reference, c.archived) == ('5', None, 'R1', True)
        assert c.emails == ['a@acme.fr']

    def test_line_defaults(self):
        line = parse_line({'label': 'Bulletin', 'currency_amount_before_tax': None})
        assert (line.id, line.quantity, line.amount_ht) == (None, 1.0, 0.0)
