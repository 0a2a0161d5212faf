"""
Subscription differ:
- new / updated / status_changed / unchanged / disappeared partition
- line correlation by external id then by label
- amounts compared after 2-decimal rounding
"""
import engine
from fakes import client, ext_line, ext_sub, local_line, local_sub

CLIENT = engine.client_ref(client('L-1', 'Alpha Conseil'))


def diff(external, local):
    return engine.diff_subscriptions(CLIENT, external, local)


class TestSubscriptionPartition:
    def test_new_subscription(self):
        sub = ext_sub('S-1', 'C-1', [ext_line('LN-1', 'Tenue comptable', 100)])
        out = diff([sub], [])
        assert [n.subscription.id for n in out['new']] == ['S-1']
        assert out['new'][0].subscription.lines[0].family == 'comptabilite'
        assert out['new'][0].client_id == 'L-1'

    def test_disappeared_keeps_local_amount(self):
        local = local_sub('LS-1', 'L-1', 'S-9', [local_line('LL-1', 'LS-1', 'Tenue comptable', 100.0)])
        out = diff([], [local])
        gone = out['disappeared']
        assert len(gone) == 1
        assert gone[0].external_id == 'S-9'
        assert gone[0].total_ht == 100.0

    def test_unchanged(self):
        line = ext_line('LN-1', 'Tenue comptable', 100)
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Tenue comptable', 100, 'LN-1')])
        out = diff([ext_sub('S-1', 'C-1', [line])], [local])
        assert out['unchanged'] == ['S-1']
        assert out['updated'] == [] and out['status_changed'] == []
        assert out['lines_modified'] == [] and out['lines_new'] == [] and out['lines_removed'] == []

    def test_header_update(self):
        local = local_sub('LS-1', 'L-1', 'S-1', label='Old label', total_ht=100)
        sub = ext_sub('S-1', 'C-1', label='New label', total_ht=120, interval=3)
        out = diff([sub], [local])
        changes = out['updated'][0].changes
        assert set(changes) == {'label', 'total_ht', 'interval'}
        assert changes['total_ht'].delta == 20.0
        assert out['updated'][0].local_id == 'LS-1'

    def test_status_change_alone(self):
        local = local_sub('LS-1', 'L-1', 'S-1', total_ht=0)
        out = diff([ext_sub('S-1', 'C-1', status='finished', total_ht=0)], [local])
        assert out['updated'] == []
        sc = out['status_changed'][0]
        assert (sc.old_status, sc.new_status) == ('in_progress', 'finished')
        assert out['unchanged'] == [] and out['disappeared'] == []

    def test_update_and_status_change_together(self):
        local = local_sub('LS-1', 'L-1', 'S-1', total_ht=100)
        out = diff([ext_sub('S-1', 'C-1', status='stopped', total_ht=90)], [local])
        assert len(out['updated']) == 1 and len(out['status_changed']) == 1

    def test_zero_lines_is_not_an_error(self):
        local = local_sub('LS-1', 'L-1', 'S-1', total_ht=0)
        out = diff([ext_sub('S-1', 'C-1', [], total_ht=0)], [local])
        assert out['unchanged'] == ['S-1']

    def test_each_subscription_lands_in_one_bucket(self, dataset):
        from billing_api import parse_customer, parse_line, parse_subscription
        from schemas import LocalClient, LocalLine, LocalSubscription
        customers = [parse_customer(c) for c in dataset['customers']]
        subs = [parse_subscription(s, dataset['lines'][s['id']]) for s in dataset['subscriptions']]
        clients = [LocalClient.model_validate(c) for c in dataset['clients']]
        local = [LocalSubscription.model_validate(dict(s, lines=[
            LocalLine.model_validate(l) for l in dataset['local_lines'] if l['subscription_id'] == s['id']]))
            for s in dataset['local_subscriptions']]
        outcome = engine.match_customers(customers, clients, 'Demo Cabinet', engine.subscribed_customer_ids(subs))
        deltas = engine.diff_all(outcome['matches'], subs, local)

        matched = {m.customer.id for m in outcome['matches']}
        expected = {s.id for s in subs if s.customer_id in matched}
        new = {n.subscription.id for n in deltas['new']}
        unchanged = set(deltas['unchanged'])
        changed = {u.external_id for u in deltas['updated']} | {s.external_id for s in deltas['status_changed']}
        assert new | unchanged | changed == expected
        assert not new & unchanged and not new & changed and not unchanged & changed

        truth = dataset['ground_truth']
        assert sorted(new) == truth['new_subscriptions']
        assert sorted(u.external_id for u in deltas['updated']) == truth['updated']
        assert [s.external_id for s in deltas['status_changed']] == truth['status_changed']
        assert [d.external_id for d in deltas['disappeared']] == truth['disappeared']


class TestLines:
    def test_price_change(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Tenue comptable', 50.0, 'LN-1')])
        out = engine.diff_lines(CLIENT, local, [ext_line('LN-1', 'Tenue comptable', 65.0)])
        lm = out['modified'][0]
        assert lm.delta_ht == 15.0
        assert lm.delta_pct == 30.0
        assert lm.line_local_id == 'LL-1'

    def test_match_by_id_survives_relabel(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Old label', 50.0, 'LN-1')])
        out = engine.diff_lines(CLIENT, local, [ext_line('LN-1', 'New label', 50.0)])
        assert out == {'modified': [], 'new': [], 'removed': []}

    def test_match_by_label_when_ids_missing(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Bilan  Annuel', 400.0)])
        out = engine.diff_lines(CLIENT, local, [ext_line('LN-9', 'bilan annuel', 700.0)])
        assert out['modified'][0].line_local_id == 'LL-1'
        assert out['modified'][0].delta_pct == 75.0
        assert out['new'] == [] and out['removed'] == []

    def test_new_and_removed(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Frais de dossier', 20.0)])
        out = engine.diff_lines(CLIENT, local, [ext_line('LN-1', 'Secrétariat juridique', 30.0)])
        assert [n.label for n in out['new']] == ['Secrétariat juridique']
        assert out['new'][0].family == 'juridique'
        assert [r.line_local_id for r in out['removed']] == ['LL-1']
        assert out['removed'][0].amount_ht == 20.0

    def test_duplicate_labels_pair_in_order(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Bulletin', 10.0),
                                                  local_line('LL-2', 'LS-1', 'Bulletin', 20.0)])
        out = engine.diff_lines(CLIENT, local, [ext_line(None, 'Bulletin', 10.0), ext_line(None, 'Bulletin', 25.0)])
        assert [m.line_local_id for m in out['modified']] == ['LL-2']

    def test_quantity_change(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Bulletin', 10.0, 'LN-1', quantity=3)])
        out = engine.diff_lines(CLIENT, local, [ext_line('LN-1', 'Bulletin', 10.0, quantity=4)])
        lm = out['modified'][0]
        assert (lm.old_quantity, lm.new_quantity, lm.delta_ht) == (3.0, 4.0, 0.0)

    def test_zero_base_has_no_percentage(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Offert', 0.0, 'LN-1')])
        out = engine.diff_lines(CLIENT, local, [ext_line('LN-1', 'Offert', 40.0)])
        assert out['modified'][0].delta_pct is None

    def test_sub_cent_noise_is_ignored(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [local_line('LL-1', 'LS-1', 'Bulletin', 10.001, 'LN-1')])
        out = engine.diff_lines(CLIENT, local, [ext_line('LN-1', 'Bulletin', 10.004)])
        assert out['modified'] == []

    def test_family_from_catalogue(self):
        local = local_sub('LS-1', 'L-1', 'S-1', [])
        products = [{'label': 'Pack Zen', 'family': 'social'}]
        out = engine.diff_lines(CLIENT, local, [ext_line('LN-1', 'Pack Zen', 10.0)], products)
        assert out['new'][0].family == 'social'
