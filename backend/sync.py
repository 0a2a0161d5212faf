"""
Preview / commit orchestration.

Preview is read-only against both sides: it loads the local snapshot, fetches
the billing data for one cabinet, and hands everything to the engine. Commit
replays an accepted PreviewReport one cabinet at a time; it never raises and
reports per-cabinet failures in the CommitResult.
"""
import inspect
import logging

from pymongo.errors import PyMongoError

import engine
from billing_api import BillingAPIError
from schemas import CommitResult, UnitFailure, UnitOutcome

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """A cabinet's preview could not load its data."""

    def __init__(self, cabinet, message):
        super().__init__(f'{cabinet}: {message}')
        self.cabinet = cabinet


async def emit(on_progress, step, message, current=0, total=0):
    if on_progress is None:
        return
    result = on_progress({'step': step, 'message': message, 'current': current, 'total': total})
    if inspect.isawaitable(result):
        await result


# =============================================================================
# PREVIEW
# =============================================================================
async def preview_cabinet(store, client, cabinet, on_progress=None):
    """Build the PreviewReport of one cabinet. Fails fast with FetchError."""
    try:
        await emit(on_progress, 'init', f'{cabinet}: loading local data')
        clients = await store.load_clients()
        local_subs = await store.load_subscriptions()
        products = await store.load_products()

        await emit(on_progress, 'fetch', f'{cabinet}: fetching customers and subscriptions')
        customers = await client.list_customers()
        subscriptions = await client.list_subscriptions()
        await emit(on_progress, 'fetch', f'{cabinet}: {len(customers)} customers, {len(subscriptions)} subscriptions',
                   len(subscriptions), len(subscriptions))

        await emit(on_progress, 'matching', f'{cabinet}: matching customers')
        subscribed = engine.subscribed_customer_ids(subscriptions)
        outcome = engine.match_customers(customers, clients, cabinet, subscribed)
        matched = {m.customer.id for m in outcome['matches']}

        # Lines are only fetched for subscriptions of matched customers
        wanted = sum(1 for s in subscriptions if s.customer_id in matched)
        fetched = 0
        with_lines = []
        for sub in subscriptions:
            if sub.customer_id in matched:
                lines = await client.list_subscription_lines(sub.id)
                sub = sub.model_copy(update={'lines': lines})
                fetched += 1
                if fetched % 5 == 0:
                    await emit(on_progress, 'lines', f'{cabinet}: fetching lines ({fetched}/{wanted})',
                               fetched, wanted)
            with_lines.append(sub)
    except (BillingAPIError, PyMongoError) as e:
        raise FetchError(cabinet, str(e)) from e

    await emit(on_progress, 'compare', f'{cabinet}: comparing')
    report = engine.build_preview(cabinet, customers, with_lines, clients, local_subs, products, outcome=outcome)
    logger.info("Preview %s for %s: %d matched, %d new subs, %d price changes, %d anomalies",
                report.preview_id, cabinet, report.summary.matched, report.summary.new_subs,
                report.summary.price_changes, report.summary.anomalies_count)
    await emit(on_progress, 'done', f'{cabinet}: preview ready')
    return report


async def preview_cabinets(store, cabinets, client_factory, on_progress=None):
    """Preview every cabinet in turn; a failing cabinet is recorded and skipped."""
    unit_reports, failures = [], []
    for cabinet in cabinets:
        try:
            async with client_factory(cabinet) as client:
                report = await preview_cabinet(store, client, cabinet.name, on_progress)
            unit_reports.append((cabinet.name, report))
        except FetchError as e:
            logger.error(f"Preview failed for {cabinet.name}: {e}", exc_info=True)
            failures.append(UnitFailure(cabinet=cabinet.name, error=str(e)))
            await emit(on_progress, 'error', str(e))
    return engine.merge_reports(unit_reports, failures)


# =============================================================================
# COMMIT
# =============================================================================
def _subscription_fields(sub, now):
    return {
        'external_id': sub.id, 'customer_id': sub.customer_id, 'label': sub.label,
        'status': sub.status, 'frequency': sub.frequency, 'interval': sub.interval,
        'day_of_month': sub.day_of_month, 'start': sub.start, 'finish': sub.finish,
        'mode': sub.mode, 'payment_conditions': sub.payment_conditions,
        'payment_method': sub.payment_method, 'total_ht': engine.r2(sub.total_ht),
        'total_ttc': engine.r2(sub.total_ttc), 'total_tva': engine.r2(sub.total_tva),
        'synced_at': now, 'updated_at': now,
    }


def _line_doc(subscription_id, line, sync_key=None):
    doc = {
        'subscription_id': subscription_id, 'external_line_id': line.id, 'label': line.label,
        'family': line.family or engine.classify_family(line.label), 'quantity': line.quantity,
        'amount_ht': engine.r2(line.amount_ht), 'amount_ttc': engine.r2(line.amount_ttc),
        'amount_tva': engine.r2(line.amount_tva), 'vat_rate': line.vat_rate,
        'description': line.description,
    }
    if not line.id:
        doc['sync_key'] = sync_key
    return doc


def _line_present(existing_docs, line, sync_key):
    if line.id:
        return any(d.get('external_line_id') == line.id for d in existing_docs)
    # Several id-less lines may share a label; only the write that created one recognises it
    return any(d.get('sync_key') == sync_key for d in existing_docs)


async def _ensure_lines(store, subscription_id, lines, sync_keys):
    """Insert the lines not written yet. ``sync_keys`` identify id-less lines across replays."""
    existing = await store.list_lines(subscription_id)
    created = 0
    for line, sync_key in zip(lines, sync_keys):
        if _line_present(existing, line, sync_key):
            continue
        doc = _line_doc(subscription_id, line, sync_key)
        await store.insert_line(doc)
        existing.append(doc)
        created += 1
    return created


async def commit_unit(store, cabinet, report, result, now=None):
    """Write one cabinet's accepted changes. Exceptions escape to commit_report."""
    now = now or engine.now_iso()

    # 1. New subscriptions, checked by external id first
    for item in report.subscriptions_new:
        sub = item.subscription
        keys = [f'{report.preview_id}:sub:{sub.id}:{i}' for i in range(len(sub.lines))]
        existing = await store.find_subscription(sub.id)
        if existing:
            logger.info("Subscription %s already present, filling missing lines only", sub.id)
            result.lines_created += await _ensure_lines(store, existing['id'], sub.lines, keys)
            continue
        doc = dict(_subscription_fields(sub, now), client_id=item.client_id, created_at=now)
        subscription_id = await store.insert_subscription(doc)
        result.subscriptions_created += 1
        result.lines_created += await _ensure_lines(store, subscription_id, sub.lines, keys)

    # 2. Header and status updates, one write per subscription
    pending = {}
    for item in list(report.subscriptions_updated) + list(report.subscriptions_status_changed):
        pending.setdefault(item.local_id, item)
    for local_id, item in pending.items():
        fields = dict(_subscription_fields(item.subscription, now), client_id=item.client_id)
        await store.update_subscription(local_id, fields)
        result.subscriptions_updated += 1

    # 3. Price history before the live value moves
    for lm in report.lines_modified:
        if not await store.price_history_exists(report.preview_id, lm.line_local_id):
            await store.insert_price_history({
                'preview_id': report.preview_id, 'cabinet': cabinet,
                'client_id': lm.client_id, 'subscription_id': lm.subscription_local_id,
                'line_id': lm.line_local_id, 'external_line_id': lm.external_line_id,
                'label': lm.label, 'family': lm.family,
                'old_amount_ht': lm.old_amount_ht, 'new_amount_ht': lm.new_amount_ht,
                'old_quantity': lm.old_quantity, 'new_quantity': lm.new_quantity,
                'delta_ht': lm.delta_ht, 'delta_pct': lm.delta_pct, 'detected_at': now,
            })
            result.price_history_created += 1
        await store.update_line(lm.line_local_id, {
            'external_line_id': lm.external_line_id, 'label': lm.label, 'family': lm.family,
            'quantity': lm.new_quantity, 'amount_ht': lm.new_amount_ht,
            'amount_ttc': engine.r2(lm.line.amount_ttc), 'amount_tva': engine.r2(lm.line.amount_tva),
        })

    # 4. Line creations and removals
    for i, ln in enumerate(report.lines_new):
        key = f'{report.preview_id}:line:{ln.subscription_local_id}:{i}'
        result.lines_created += await _ensure_lines(store, ln.subscription_local_id, [ln.line], [key])
    for lr in report.lines_removed:
        if await store.delete_line(lr.line_local_id):
            result.lines_removed += 1

    # 5. Client linkage
    for m in report.matches:
        fields = {}
        ext_ref = m.customer.external_reference
        if ext_ref and m.level != 'uuid' and m.client.external_reference != ext_ref:
            fields['external_reference'] = ext_ref
        if m.client.cabinet != cabinet:
            fields['cabinet'] = cabinet
        if fields:
            fields['match_level'] = m.level
            await store.update_client(m.client.id, fields)
            result.clients_updated += 1

    result.customers_matched += len(report.matches)
    result.customers_not_matched += len(report.clients_new)
    result.customers_without_subscription += len(report.clients_no_subscription)
    result.unmatched_customers.extend(c.customer for c in report.clients_new)
    result.customers_no_subscription.extend(report.clients_no_subscription)


async def commit_report(store, report, on_progress=None):
    """Replay every cabinet of an accepted report. Always returns a CommitResult."""
    units = engine.split_report(report)
    result = CommitResult(units=[UnitOutcome(cabinet=cabinet) for cabinet, _ in units])

    for i, (cabinet, unit_report) in enumerate(units):
        outcome = result.units[i]
        outcome.state = 'writing'
        await emit(on_progress, 'commit', f'{cabinet}: writing changes', i + 1, len(units))
        try:
            await commit_unit(store, cabinet, unit_report, result)
            outcome.state = 'done'
        except Exception as e:
            logger.error(f"Commit failed for {cabinet}: {e}", exc_info=True)
            outcome.state = 'failed'
            outcome.error = str(e)
            result.errors.append(f'{cabinet}: {e}')

    await emit(on_progress, 'done', 'Sync committed')
    logger.info("Commit done: %d subscriptions created, %d updated, %d lines created, %d history rows, %d errors",
                result.subscriptions_created, result.subscriptions_updated, result.lines_created,
                result.price_history_created, len(result.errors))
    return result
