"""
Billing Sync Engine
Deterministic matching, diffing and anomaly classification between the
billing platform's customers/subscriptions and the local client roster.
Pure functions over already-fetched snapshots: no I/O happens here.
"""
import re
import uuid
import unicodedata
from collections import defaultdict
from datetime import datetime, timezone

from schemas import (
    Anomaly, CabinetChange, ClientRef, CustomerRef, FieldChange, LineModified, LineNew,
    LineRemoved, MatchResult, MissingClient, PreviewReport, SubscriptionDisappeared,
    SubscriptionNew, SubscriptionStatusChanged, SubscriptionUpdated, Summary, UnitFailure,
    UnitReport, UnmatchedCustomer,
)

# =============================================================================
# CONSTANTS
# =============================================================================
LEGAL_FORMS = {
    'sarl', 'sas', 'sa', 'eurl', 'sasu', 'sci', 'snc', 'scp', 'selarl', 'selas',
    'earl', 'gaec', 'gie', 'scop', 'scm', 'sep', 'scea', 'gfa', 'eirl',
    'holding', 'groupe', 'group', 'international', 'france', 'paris',
}

MATCH_LEVELS = ['uuid', 'siren', 'name_exact', 'name_clean', 'name_partial', 'name_clean_partial']
WEAK_LEVELS = {'name_partial', 'name_clean_partial'}
MATCH_LEVEL_LABELS = {
    'uuid': 'External reference',
    'siren': 'SIREN',
    'name_exact': 'Exact name',
    'name_clean': 'Name without legal form',
    'name_partial': 'Partial name',
    'name_clean_partial': 'Partial name without legal form',
}

SIREN_LENGTH = 9
PARTIAL_MIN_RATIO = 0.5
ACTIVE_STATUS = 'in_progress'

PRICE_VARIATION_WARNING_PCT = 20
PRICE_VARIATION_ERROR_PCT = 50
MATERIAL_DELTA_HT = 1000.00

SEVERITY_RANK = {'error': 0, 'warning': 1, 'info': 2}

FAMILY_KEYWORDS = [
    ('social', ['social', 'bulletin', 'salari', 'coffre-fort', 'publi-postage']),
    ('comptabilite', ['comptab', 'bilan', 'p&l', 'surveillance']),
    ('juridique', ['juridique', 'secrétariat', 'secretariat']),
]
DEFAULT_FAMILY = 'support'

SUMMARY_LISTS = [
    'matches', 'clients_new', 'clients_missing', 'clients_no_subscription',
    'subscriptions_new', 'subscriptions_updated', 'subscriptions_disappeared',
    'subscriptions_status_changed', 'subscriptions_unchanged',
    'lines_modified', 'lines_new', 'lines_removed', 'anomalies',
]

# =============================================================================
# HELPERS
# =============================================================================
def r2(v):
    return round(float(v or 0), 2)

def now_iso():
    return datetime.now(timezone.utc).isoformat()

def normalize_name(name):
    """Lowercase, strip accents, collapse dotted acronyms, keep words separated by one space."""
    if not name:
        return ""
    n = unicodedata.normalize('NFD', str(name).lower())
    n = ''.join(ch for ch in n if not unicodedata.combining(ch))
    n = n.replace('.', '')
    n = re.sub(r'[^a-z0-9]+', ' ', n)
    return re.sub(r'\s+', ' ', n).strip()

def strip_legal_forms(normalized):
    tokens = normalized.split()
    while tokens and tokens[-1] in LEGAL_FORMS:
        tokens.pop()
    while tokens and tokens[0] in LEGAL_FORMS:
        tokens.pop(0)
    return ' '.join(tokens)

def compact(normalized):
    return normalized.replace(' ', '')

def normalize_siren(value):
    """Digits only; None unless exactly nine digits remain."""
    if not value:
        return None
    digits = re.sub(r'\D', '', str(value))
    return digits if len(digits) == SIREN_LENGTH else None

def is_partial(a, b):
    if not a or not b:
        return False
    shorter, longer = sorted((a, b), key=len)
    if shorter not in longer:
        return False
    return len(shorter) / len(longer) >= PARTIAL_MIN_RATIO

def classify_family(label, products=()):
    """Product family of a billing line: catalogue lookup first, keywords second."""
    if not label:
        return DEFAULT_FAMILY
    key = compact(normalize_name(label))
    for p in products:
        if compact(normalize_name(p.get('label'))) == key and p.get('family'):
            return p['family']
    lower = label.lower()
    for family, keywords in FAMILY_KEYWORDS:
        if any(k in lower for k in keywords):
            return family
    return DEFAULT_FAMILY

def customer_ref(customer):
    return CustomerRef(id=customer.id, name=customer.name,
                       external_reference=customer.external_reference, reg_no=customer.reg_no)

def client_ref(client):
    return ClientRef(id=client.id, name=client.name, siren=client.siren,
                     external_reference=client.external_reference,
                     cabinet=client.cabinet, active=client.active)

# =============================================================================
# ENTITY MATCHING (6-Tier Cascade)
# =============================================================================
def _name_keys(name):
    norm = normalize_name(name)
    return compact(norm), compact(strip_legal_forms(norm))

def match_customer(customer, clients):
    """Resolve one customer against clients. Returns (client, level, ambiguous).

    The first tier with exactly one candidate wins. A tier with several
    candidates is skipped; if no weaker tier settles it the customer stays
    unmatched and the tied clients come back in ``ambiguous``.
    """
    ext_ref = (customer.external_reference or '').strip()
    siren = normalize_siren(customer.reg_no)
    name_exact, name_clean = _name_keys(customer.name)
    keyed = [(c, _name_keys(c.name)) for c in clients]

    tiers = [
        ('uuid', lambda c, k: bool(ext_ref) and (c.external_reference or '').strip() == ext_ref),
        ('siren', lambda c, k: siren is not None and normalize_siren(c.siren) == siren),
        ('name_exact', lambda c, k: bool(name_exact) and k[0] == name_exact),
        ('name_clean', lambda c, k: bool(name_clean) and k[1] == name_clean),
        ('name_partial', lambda c, k: is_partial(k[0], name_exact)),
        ('name_clean_partial', lambda c, k: is_partial(k[1], name_clean)),
    ]

    ambiguous = []
    for level, test in tiers:
        candidates = [c for c, k in keyed if test(c, k)]
        if len(candidates) == 1:
            return candidates[0], level, []
        if len(candidates) > 1 and not ambiguous:
            ambiguous = candidates
    return None, None, ambiguous

def match_customers(customers, clients, cabinet, subscribed_ids):
    matches, clients_new, no_subscription, inactive_matches = [], [], [], []
    active = [c for c in clients if c.active]
    inactive = [c for c in clients if not c.active]

    for customer in customers:
        if customer.id not in subscribed_ids:
            no_subscription.append(customer_ref(customer))
            continue

        client, level, ambiguous = match_customer(customer, active)
        if client:
            change = None
            if client.cabinet and client.cabinet != cabinet:
                change = CabinetChange(old=client.cabinet, new=cabinet)
            matches.append(MatchResult(
                customer=customer_ref(customer), client=client_ref(client),
                level=level, level_label=MATCH_LEVEL_LABELS[level], cabinet_change=change))
        else:
            clients_new.append(UnmatchedCustomer(
                customer=customer_ref(customer), ambiguous_with=[client_ref(c) for c in ambiguous]))

        if inactive:
            dormant, dormant_level, _ = match_customer(customer, inactive)
            if dormant:
                inactive_matches.append({'customer': customer, 'client': dormant, 'level': dormant_level})

    matched_ids = {m.client.id for m in matches}
    missing = [MissingClient(client=client_ref(c)) for c in active
               if c.cabinet == cabinet and c.id not in matched_ids]

    return {
        'matches': matches, 'clients_new': clients_new, 'clients_missing': missing,
        'clients_no_subscription': no_subscription, 'inactive_matches': inactive_matches,
    }

# =============================================================================
# SUBSCRIPTION DIFF
# =============================================================================
def _header_changes(existing, sub):
    changes = {}
    if (existing.label or '') != (sub.label or ''):
        changes['label'] = FieldChange(old=existing.label, new=sub.label)
    old_ht, new_ht = r2(existing.total_ht), r2(sub.total_ht)
    if old_ht != new_ht:
        changes['total_ht'] = FieldChange(old=old_ht, new=new_ht, delta=r2(new_ht - old_ht))
    if (existing.frequency or None) != (sub.frequency or None):
        changes['frequency'] = FieldChange(old=existing.frequency, new=sub.frequency)
    if int(existing.interval or 1) != int(sub.interval or 1):
        changes['interval'] = FieldChange(old=existing.interval, new=sub.interval)
    return changes

def diff_lines(client, local_sub, external_lines, products=()):
    """Correlate lines by external line id, then by normalized label."""
    modified, new, removed = [], [], []
    claimed = set()
    paired = {}

    by_ext_id = {l.external_line_id: l for l in local_sub.lines if l.external_line_id}
    for i, line in enumerate(external_lines):
        local = by_ext_id.get(line.id) if line.id else None
        if local is not None and local.id not in claimed:
            claimed.add(local.id)
            paired[i] = local

    by_label = defaultdict(list)
    for l in local_sub.lines:
        if l.id not in claimed:
            by_label[compact(normalize_name(l.label))].append(l)
    for i, line in enumerate(external_lines):
        if i in paired:
            continue
        for candidate in by_label.get(compact(normalize_name(line.label)), []):
            if candidate.id not in claimed:
                claimed.add(candidate.id)
                paired[i] = candidate
                break

    for i, line in enumerate(external_lines):
        family = line.family or classify_family(line.label, products)
        tagged = line.model_copy(update={'family': family})
        local = paired.get(i)
        if local is None:
            new.append(LineNew(
                client_id=client.id, client_name=client.name,
                subscription_local_id=local_sub.id, subscription_label=local_sub.label,
                label=line.label, family=family, line=tagged))
            continue

        old_amt, new_amt = r2(local.amount_ht), r2(line.amount_ht)
        old_qty, new_qty = r2(local.quantity or 1), r2(line.quantity or 1)
        if old_amt == new_amt and old_qty == new_qty:
            continue
        delta = r2(new_amt - old_amt)
        modified.append(LineModified(
            client_id=client.id, client_name=client.name,
            subscription_local_id=local_sub.id, subscription_label=local_sub.label,
            line_local_id=local.id, external_line_id=line.id, label=line.label, family=family,
            old_amount_ht=old_amt, new_amount_ht=new_amt, old_quantity=old_qty, new_quantity=new_qty,
            delta_ht=delta, delta_pct=r2(delta / old_amt * 100) if old_amt != 0 else None,
            line=tagged))

    for l in local_sub.lines:
        if l.id not in claimed:
            removed.append(LineRemoved(
                client_id=client.id, client_name=client.name,
                subscription_local_id=local_sub.id, subscription_label=local_sub.label,
                line_local_id=l.id, label=l.label, amount_ht=r2(l.amount_ht),
                quantity=r2(l.quantity or 1)))

    return {'modified': modified, 'new': new, 'removed': removed}

def diff_subscriptions(client, external_subs, local_subs, products=()):
    result = {'new': [], 'updated': [], 'status_changed': [], 'unchanged': [], 'disappeared': [],
              'lines_modified': [], 'lines_new': [], 'lines_removed': []}
    local_by_ext = {s.external_id: s for s in local_subs if s.external_id}
    seen = set()

    for sub in external_subs:
        if sub.id in seen:
            continue
        seen.add(sub.id)
        existing = local_by_ext.get(sub.id)
        if existing is None:
            lines = [l.model_copy(update={'family': l.family or classify_family(l.label, products)})
                     for l in sub.lines]
            result['new'].append(SubscriptionNew(
                client_id=client.id, client_name=client.name,
                subscription=sub.model_copy(update={'lines': lines})))
            continue

        changes = _header_changes(existing, sub)
        status_changed = (existing.status or None) != sub.status
        if changes:
            result['updated'].append(SubscriptionUpdated(
                client_id=client.id, client_name=client.name, local_id=existing.id,
                external_id=sub.id, label=sub.label, changes=changes, subscription=sub))
        if status_changed:
            result['status_changed'].append(SubscriptionStatusChanged(
                client_id=client.id, client_name=client.name, local_id=existing.id,
                external_id=sub.id, label=sub.label, old_status=existing.status,
                new_status=sub.status, subscription=sub))
        if not changes and not status_changed:
            result['unchanged'].append(sub.id)

        line_diff = diff_lines(client, existing, sub.lines, products)
        result['lines_modified'].extend(line_diff['modified'])
        result['lines_new'].extend(line_diff['new'])
        result['lines_removed'].extend(line_diff['removed'])

    for local in local_subs:
        if local.external_id and local.external_id not in seen:
            result['disappeared'].append(SubscriptionDisappeared(
                client_id=client.id, client_name=client.name, local_id=local.id,
                external_id=local.external_id, label=local.label, status=local.status,
                total_ht=r2(local.total_ht)))

    return result

def diff_all(matches, subscriptions, local_subs, products=()):
    """Run the differ once per matched client, in first-match order."""
    deltas = {'new': [], 'updated': [], 'status_changed': [], 'unchanged': [], 'disappeared': [],
              'lines_modified': [], 'lines_new': [], 'lines_removed': []}
    client_by_customer = {m.customer.id: m.client for m in matches}
    subs_by_client = defaultdict(list)
    for sub in subscriptions:
        client = client_by_customer.get(sub.customer_id)
        if client:
            subs_by_client[client.id].append(sub)
    local_by_client = defaultdict(list)
    for s in local_subs:
        local_by_client[s.client_id].append(s)

    done = set()
    for m in matches:
        if m.client.id in done:
            continue
        done.add(m.client.id)
        part = diff_subscriptions(m.client, subs_by_client[m.client.id], local_by_client[m.client.id], products)
        for key, items in part.items():
            deltas[key].extend(items)
    return deltas

# =============================================================================
# ANOMALY CLASSIFICATION
# =============================================================================
def find_inactive_with_subscriptions(inactive_matches, subscriptions):
    hits = []
    for im in inactive_matches:
        customer, client = im['customer'], im['client']
        active = [s for s in subscriptions if s.customer_id == customer.id and s.status == ACTIVE_STATUS]
        if not active:
            continue
        hits.append({
            'client_id': client.id, 'client_name': client.name,
            'customer_id': customer.id, 'customer_name': customer.name,
            'level': im['level'], 'subscriptions_count': len(active),
            'total_ht': r2(sum(s.total_ht for s in active)),
            'subscriptions': [{'external_id': s.id, 'label': s.label, 'status': s.status,
                               'total_ht': r2(s.total_ht)} for s in active],
        })
    return hits

def _signed(v):
    return f"+{v:.1f}" if v > 0 else f"{v:.1f}"

def classify_anomalies(matches, deltas, inactive=()):
    anomalies = []

    for m in matches:
        if m.level in WEAK_LEVELS:
            anomalies.append(Anomaly(
                type='weak_match', severity='warning',
                message=f'Weak match: "{m.customer.name}" (billing) <-> "{m.client.name}" (local), level {m.level_label}',
                details={'customer_id': m.customer.id, 'customer_name': m.customer.name,
                         'client_id': m.client.id, 'client_name': m.client.name,
                         'level': m.level, 'level_label': m.level_label}))

    for m in matches:
        if m.cabinet_change:
            anomalies.append(Anomaly(
                type='cabinet_mismatch', severity='warning',
                message=f'{m.client.name}: cabinet "{m.cabinet_change.old}" will become "{m.cabinet_change.new}"',
                details={'client_id': m.client.id, 'client_name': m.client.name,
                         'old': m.cabinet_change.old, 'new': m.cabinet_change.new}))

    gone_by_client = defaultdict(list)
    for d in deltas.get('disappeared', []):
        gone_by_client[d.client_id].append(d)
    for client_id, gone in gone_by_client.items():
        anomalies.append(Anomaly(
            type='subscriptions_disappeared', severity='warning',
            message=f'{gone[0].client_name}: {len(gone)} local subscription(s) not found on the billing platform',
            details={'client_id': client_id, 'client_name': gone[0].client_name, 'count': len(gone),
                     'subscriptions': [{'client_name': d.client_name, 'external_id': d.external_id,
                                        'label': d.label, 'status': d.status, 'total_ht': d.total_ht}
                                       for d in gone]}))

    for lm in deltas.get('lines_modified', []):
        if lm.delta_pct is None or abs(lm.delta_pct) <= PRICE_VARIATION_WARNING_PCT:
            continue
        anomalies.append(Anomaly(
            type='price_variation_high',
            severity='error' if abs(lm.delta_pct) > PRICE_VARIATION_ERROR_PCT else 'warning',
            message=(f'{lm.client_name} - "{lm.label}": {_signed(lm.delta_pct)}% '
                     f'({lm.old_amount_ht:.2f} -> {lm.new_amount_ht:.2f} HT)'),
            details={'client_id': lm.client_id, 'client_name': lm.client_name,
                     'subscription_label': lm.subscription_label, 'label': lm.label,
                     'old_amount_ht': lm.old_amount_ht, 'new_amount_ht': lm.new_amount_ht,
                     'delta_ht': lm.delta_ht, 'delta_pct': lm.delta_pct}))

    for sc in deltas.get('status_changed', []):
        if sc.old_status == ACTIVE_STATUS and sc.new_status in ('stopped', 'finished'):
            anomalies.append(Anomaly(
                type='status_regression', severity='info',
                message=f'{sc.client_name} - "{sc.label}": {sc.old_status} -> {sc.new_status}',
                details={'client_id': sc.client_id, 'client_name': sc.client_name,
                         'external_id': sc.external_id, 'old_status': sc.old_status,
                         'new_status': sc.new_status}))

    for hit in inactive:
        anomalies.append(Anomaly(
            type='inactive_with_subscriptions', severity='error',
            message=(f'{hit["client_name"]} is inactive but has {hit["subscriptions_count"]} active '
                     f'subscription(s) on the billing platform ({hit["total_ht"]:.2f} HT)'),
            details=dict(hit)))

    return sorted(anomalies, key=lambda a: SEVERITY_RANK[a.severity])

# =============================================================================
# REPORT BUILDING
# =============================================================================
def summarize(report_fields, total_customers, customers_with_subscription):
    by_severity = {'error': 0, 'warning': 0, 'info': 0}
    for a in report_fields['anomalies']:
        by_severity[a.severity] += 1
    total_delta = r2(sum(lm.delta_ht for lm in report_fields['lines_modified']))
    return Summary(
        total_customers=total_customers,
        customers_with_subscription=customers_with_subscription,
        matched=len(report_fields['matches']),
        unmatched=len(report_fields['clients_new']),
        no_subscription=len(report_fields['clients_no_subscription']),
        clients_missing=len(report_fields['clients_missing']),
        new_subs=len(report_fields['subscriptions_new']),
        updated_subs=len(report_fields['subscriptions_updated']),
        disappeared_subs=len(report_fields['subscriptions_disappeared']),
        status_changes=len(report_fields['subscriptions_status_changed']),
        unchanged_subs=len(report_fields['subscriptions_unchanged']),
        price_changes=len(report_fields['lines_modified']),
        new_lines=len(report_fields['lines_new']),
        removed_lines=len(report_fields['lines_removed']),
        total_delta_ht=total_delta,
        anomalies_count=len(report_fields['anomalies']),
        by_severity=by_severity,
        material_change=abs(total_delta) >= MATERIAL_DELTA_HT,
    )

def build_report(cabinet, outcome, deltas, anomalies, total_customers, customers_with_subscription):
    fields = {
        'matches': outcome['matches'],
        'clients_new': outcome['clients_new'],
        'clients_missing': outcome['clients_missing'],
        'clients_no_subscription': outcome['clients_no_subscription'],
        'subscriptions_new': deltas['new'],
        'subscriptions_updated': deltas['updated'],
        'subscriptions_disappeared': deltas['disappeared'],
        'subscriptions_status_changed': deltas['status_changed'],
        'subscriptions_unchanged': deltas['unchanged'],
        'lines_modified': deltas['lines_modified'],
        'lines_new': deltas['lines_new'],
        'lines_removed': deltas['lines_removed'],
        'anomalies': anomalies,
    }
    return PreviewReport(
        preview_id=uuid.uuid4().hex[:12], cabinet=cabinet, generated_at=now_iso(),
        summary=summarize(fields, total_customers, customers_with_subscription), **fields)

def subscribed_customer_ids(subscriptions):
    return {s.customer_id for s in subscriptions if s.customer_id}

def build_preview(cabinet, customers, subscriptions, clients, local_subs, products=(), outcome=None):
    """Matcher -> Differ -> Classifier -> Builder for one cabinet."""
    subscribed = subscribed_customer_ids(subscriptions)
    if outcome is None:
        outcome = match_customers(customers, clients, cabinet, subscribed)
    deltas = diff_all(outcome['matches'], subscriptions, local_subs, products)
    inactive = find_inactive_with_subscriptions(outcome['inactive_matches'], subscriptions)
    anomalies = classify_anomalies(outcome['matches'], deltas, inactive)
    return build_report(cabinet, outcome, deltas, anomalies, len(customers), len(subscribed))

# =============================================================================
# MULTI-CABINET AGGREGATION
# =============================================================================
def merge_reports(unit_reports, failures=()):
    """Merge (cabinet, report) pairs into one report that keeps the pairs for replay."""
    merged = {key: [] for key in SUMMARY_LISTS}
    totals = defaultdict(int)
    by_severity = {'error': 0, 'warning': 0, 'info': 0}
    material = False

    for _, report in unit_reports:
        for key in SUMMARY_LISTS:
            merged[key].extend(getattr(report, key))
        for name, value in report.summary.model_dump().items():
            if name == 'by_severity':
                for sev, count in value.items():
                    by_severity[sev] = by_severity.get(sev, 0) + count
            elif name == 'material_change':
                material = material or value
            elif name != 'total_delta_ht':
                totals[name] += value

    total_delta = r2(sum(lm.delta_ht for lm in merged['lines_modified']))
    summary = Summary(**totals, total_delta_ht=total_delta, by_severity=by_severity,
                      material_change=material or abs(total_delta) >= MATERIAL_DELTA_HT)
    return PreviewReport(
        preview_id=uuid.uuid4().hex[:12],
        cabinet=', '.join(cabinet for cabinet, _ in unit_reports),
        generated_at=now_iso(), summary=summary,
        failed_units=[f if isinstance(f, UnitFailure) else UnitFailure(**f) for f in failures],
        units=[UnitReport(cabinet=cabinet, report=report) for cabinet, report in unit_reports],
        **merged)

def split_report(report):
    """Inverse of merge_reports: the (cabinet, report) pairs to replay."""
    if report.units:
        return [(u.cabinet, u.report) for u in report.units]
    return [(report.cabinet, report)]

def pack_report(report):
    """Drop the merged lists of a multi-cabinet report; its units still hold every delta."""
    if not report.units:
        return report
    return report.model_copy(update={key: [] for key in SUMMARY_LISTS})

def unpack_report(report):
    """Rebuild the merged lists of a packed report from its units, in cabinet order."""
    if not report.units:
        return report
    merged = {key: [] for key in SUMMARY_LISTS}
    for unit in report.units:
        for key in SUMMARY_LISTS:
            merged[key].extend(getattr(unit.report, key))
    return report.model_copy(update=merged)
