"""
Synthetic Billing Dataset Generator
Builds a deterministic billing snapshot plus the matching local roster, with
known discrepancies (ground truth) covering every match tier, delta kind and
anomaly type. Used by demo mode (BILLING_MODE=synthetic) and by the tests.
"""
import random

from billing_api import parse_customer, parse_line, parse_subscription

FILLER_COMPANIES = [
    "Cave Saint Roch", "Librairie du Port", "Optique Lumiere", "Fromagerie Alpine",
    "Plomberie Girard", "Studio Kerouac", "Fleurs de Loire", "Imprimerie Vasseur",
    "Ecole de Voile Iroise", "Brasserie des Halles", "Cordonnerie Petit", "Horlogerie Faure",
]

LINE_CATALOGUE = [
    ("Tenue comptable", "comptabilite"),
    ("Bulletins de salaire", "social"),
    ("Bilan annuel", "comptabilite"),
    ("Secrétariat juridique", "juridique"),
    ("Frais de dossier", "support"),
]


def gen_id(prefix, num):
    return f"{prefix}-{num:03d}"


def _money(v):
    return f"{v:.2f}"


def _raw_line(line_id, label, ht, qty=1):
    return {
        'id': line_id, 'label': label, 'quantity': str(qty),
        'currency_amount_before_tax': _money(ht), 'currency_tax': _money(ht * 0.2),
        'amount': _money(ht * 1.2), 'vat_rate': 'FR_200',
    }


def _raw_subscription(sub_id, customer_id, label, status, lines):
    ht = sum(float(l['currency_amount_before_tax']) for l in lines)
    return {
        'id': sub_id, 'label': label, 'status': status, 'customer': {'id': customer_id},
        'recurring_rule': {'rule_type': 'monthly', 'interval': 1, 'day_of_month': [-1]},
        'customer_invoice_data': {'currency_amount_before_tax': _money(ht),
                                  'currency_tax': _money(ht * 0.2), 'amount': _money(ht * 1.2)},
        'start': '2024-01-01', 'finish': None, 'mode': 'awaiting_validation',
        'payment_conditions': '30_days', 'payment_method': 'transfer',
    }


def _local_line(line_id, sub_id, label, ht, external_line_id=None, qty=1):
    return {
        'id': line_id, 'subscription_id': sub_id, 'external_line_id': external_line_id,
        'label': label, 'quantity': qty, 'amount_ht': round(ht, 2),
        'amount_ttc': round(ht * 1.2, 2), 'amount_tva': round(ht * 0.2, 2),
    }


def _local_subscription(sub_id, client_id, external_id, label, status, lines):
    ht = round(sum(l['amount_ht'] for l in lines), 2)
    return {
        'id': sub_id, 'client_id': client_id, 'external_id': external_id, 'label': label,
        'status': status, 'frequency': 'monthly', 'interval': 1, 'total_ht': ht,
        'total_ttc': round(ht * 1.2, 2), 'total_tva': round(ht * 0.2, 2),
    }


def generate_synthetic(cabinet="Demo Cabinet", seed=42):
    rng = random.Random(seed)
    customers, subscriptions, lines = [], [], {}
    clients, local_subs, local_lines = [], [], []

    def client(cid, name, siren=None, ext_ref=None, cab=cabinet, active=True):
        clients.append({'id': cid, 'name': name, 'siren': siren, 'external_reference': ext_ref,
                        'cabinet': cab, 'active': active})

    def customer(cid, name, reg_no=None, ext_ref=None):
        customers.append({'id': cid, 'name': name, 'reg_no': reg_no, 'external_reference': ext_ref,
                          'emails': [f"contact@{cid.lower()}.example"]})

    def external(sub_id, customer_id, label, status, raw_lines):
        subscriptions.append(_raw_subscription(sub_id, customer_id, label, status, raw_lines))
        lines[sub_id] = raw_lines

    def local(sub_id, client_id, external_id, label, status, sub_lines):
        local_subs.append(_local_subscription(sub_id, client_id, external_id, label, status, sub_lines))
        local_lines.extend(sub_lines)

    # Anomaly 1: uuid match, "Tenue comptable" 50 -> 65 (+30%, warning)
    customer('CUS-001', 'Cabinet Dupont', ext_ref='REF-001')
    client('L-001', 'Dupont & Associés', ext_ref='REF-001')
    external('S-001', 'CUS-001', 'Forfait Dupont', 'in_progress', [
        _raw_line('LN-001', 'Tenue comptable', 65), _raw_line('LN-002', 'Bulletins de salaire', 100)])
    local('LS-001', 'L-001', 'S-001', 'Forfait Dupont', 'in_progress', [
        _local_line('LL-001', 'LS-001', 'Tenue comptable', 50, 'LN-001'),
        _local_line('LL-002', 'LS-001', 'Bulletins de salaire', 100, 'LN-002')])

    # Anomaly 2: siren match, status in_progress -> stopped
    customer('CUS-002', 'Garage Leroy', reg_no='552 100 554')
    client('L-002', 'Leroy Automobiles', siren='552100554')
    external('S-002', 'CUS-002', 'Forfait Leroy', 'stopped', [_raw_line('LN-003', 'Tenue comptable', 120)])
    local('LS-002', 'L-002', 'S-002', 'Forfait Leroy', 'in_progress', [
        _local_line('LL-003', 'LS-002', 'Tenue comptable', 120, 'LN-003')])

    # Anomaly 3: exact name match, subscription unknown locally
    customer('CUS-003', 'Pharmacie Centrale')
    client('L-003', 'PHARMACIE CENTRALE')
    external('S-003', 'CUS-003', 'Forfait Pharmacie', 'in_progress', [
        _raw_line('LN-004', 'Tenue comptable', 180), _raw_line('LN-005', 'Bulletins de salaire', 90)])

    # Anomaly 4: legal-form match, label change, "Bilan annuel" 400 -> 700 (+75%, error),
    # one line added, one removed; local lines carry no external ids
    customer('CUS-004', 'BOULANGERIE MARTIN')
    client('L-004', 'Boulangerie Martin SARL')
    external('S-004', 'CUS-004', 'Mission comptable annuelle', 'in_progress', [
        _raw_line('LN-006', 'Bilan annuel', 700), _raw_line('LN-007', 'Secrétariat juridique', 30)])
    local('LS-004', 'L-004', 'S-004', 'Mission comptable', 'in_progress', [
        _local_line('LL-004', 'LS-004', 'Bilan annuel', 400),
        _local_line('LL-005', 'LS-004', 'Frais de dossier', 20)])

    # Anomaly 5: partial name (weak) match, one local subscription gone from the platform
    customer('CUS-005', 'Transports Moreau et Fils')
    client('L-005', 'Transports Moreau')
    external('S-005', 'CUS-005', 'Forfait Moreau', 'in_progress', [_raw_line('LN-008', 'Tenue comptable', 150)])
    local('LS-005', 'L-005', 'S-005', 'Forfait Moreau', 'in_progress', [
        _local_line('LL-006', 'LS-005', 'Tenue comptable', 150, 'LN-008')])
    local('LS-099', 'L-005', 'S-099', 'Ancien forfait Moreau', 'in_progress', [
        _local_line('LL-099', 'LS-099', 'Tenue comptable', 100, 'LN-099')])

    # Anomaly 6: billing customer with no local counterpart
    customer('CUS-006', 'Orphan Billing Co')
    external('S-006', 'CUS-006', 'Forfait Orphan', 'in_progress', [_raw_line('LN-009', 'Tenue comptable', 75)])

    # Anomaly 7: customer without any subscription
    customer('CUS-007', 'Prospect Sans Abonnement')

    # Anomaly 8: inactive local client still billed 200.00 HT
    customer('CUS-008', 'Atelier Fermé', reg_no='732829320')
    client('L-008', 'Atelier Ferme SAS', siren='732829320', active=False)
    external('S-008', 'CUS-008', 'Forfait Atelier', 'in_progress', [_raw_line('LN-010', 'Tenue comptable', 200)])

    # Anomaly 9: local client nobody bills
    client('L-009', 'Client Disparu')

    # Anomaly 10: uuid match on a client filed under another cabinet
    customer('CUS-010', 'Menuiserie Bernard', ext_ref='REF-010')
    client('L-010', 'Menuiserie Bernard', ext_ref='REF-010', cab='Autre Cabinet')
    external('S-010', 'CUS-010', 'Forfait Bernard', 'in_progress', [_raw_line('LN-011', 'Tenue comptable', 95)])
    local('LS-010', 'L-010', 'S-010', 'Forfait Bernard', 'in_progress', [
        _local_line('LL-010', 'LS-010', 'Tenue comptable', 95, 'LN-011')])

    # Clean background: exact matches, unchanged subscriptions
    for i, name in enumerate(FILLER_COMPANIES):
        n = 20 + i
        cid, lid, sid = gen_id('CUS', n), gen_id('L', n), gen_id('S', n)
        label, _ = rng.choice(LINE_CATALOGUE[:3])
        ht = float(rng.choice([80, 120, 150, 200, 250, 300]))
        customer(cid, name)
        client(lid, name)
        external(sid, cid, f"Forfait {name}", 'in_progress', [_raw_line(gen_id('LN', n), label, ht)])
        local(gen_id('LS', n), lid, sid, f"Forfait {name}", 'in_progress', [
            _local_line(gen_id('LL', n), gen_id('LS', n), label, ht, gen_id('LN', n))])

    return {
        'cabinet': cabinet,
        'customers': customers,
        'subscriptions': subscriptions,
        'lines': lines,
        'clients': clients,
        'local_subscriptions': local_subs,
        'local_lines': local_lines,
        'products': [{'label': label, 'family': family} for label, family in LINE_CATALOGUE],
        'ground_truth': {
            'levels': {'CUS-001': 'uuid', 'CUS-002': 'siren', 'CUS-003': 'name_exact',
                       'CUS-004': 'name_clean', 'CUS-005': 'name_partial', 'CUS-010': 'uuid'},
            'unmatched': ['CUS-006', 'CUS-008'],
            'no_subscription': ['CUS-007'],
            'missing_clients': ['L-009'],
            'new_subscriptions': ['S-003'],
            'updated': ['S-001', 'S-004'],
            'status_changed': ['S-002'],
            'disappeared': ['S-099'],
            'price_changes': {'Tenue comptable': 15.0, 'Bilan annuel': 300.0},
            'new_lines': ['Secrétariat juridique'],
            'removed_lines': ['Frais de dossier'],
            'total_delta_ht': 315.0,
            'anomalies': {'weak_match': 1, 'cabinet_mismatch': 1, 'subscriptions_disappeared': 1,
                          'price_variation_high': 2, 'status_regression': 1,
                          'inactive_with_subscriptions': 1},
        },
    }


class SyntheticBillingClient:
    """Serves a generated dataset through the BillingClient interface."""

    def __init__(self, dataset):
        self.dataset = dataset

    @classmethod
    def for_cabinet(cls, cabinet, seed=42):
        return cls(generate_synthetic(cabinet.name, seed=seed))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def list_customers(self):
        return [parse_customer(raw) for raw in self.dataset['customers']]

    async def list_subscriptions(self):
        return [parse_subscription(raw) for raw in self.dataset['subscriptions']]

    async def list_subscription_lines(self, subscription_id):
        return [parse_line(raw) for raw in self.dataset['lines'].get(subscription_id, [])]
