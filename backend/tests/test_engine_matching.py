"""
Entity matching:
- normalization helpers (names, legal forms, SIREN)
- 6-tier cascade order and ambiguity handling
- match_customers partitions (matched / new / missing / no subscription)
"""
import engine
from fakes import client, customer


class TestNormalization:
    def test_normalize_name_strips_accents_and_punctuation(self):
        assert engine.normalize_name("  Société Générale-Est ") == "societe generale est"

    def test_normalize_name_collapses_dotted_acronyms(self):
        assert engine.normalize_name("S.A.R.L. Dupont") == "sarl dupont"

    def test_normalize_name_empty(self):
        assert engine.normalize_name(None) == ""
        assert engine.normalize_name("") == ""

    def test_strip_legal_forms_both_ends(self):
        assert engine.strip_legal_forms("sas boulangerie martin sarl") == "boulangerie martin"

    def test_strip_legal_forms_keeps_inner_tokens(self):
        assert engine.strip_legal_forms("garage sa du port") == "garage sa du port"

    def test_normalize_siren(self):
        assert engine.normalize_siren("552 100 554") == "552100554"
        assert engine.normalize_siren("55210055") is None
        assert engine.normalize_siren("55210055400012") is None
        assert engine.normalize_siren(None) is None

    def test_is_partial_ratio(self):
        assert engine.is_partial("transportsmoreau", "transportsmoreauetfils")
        assert not engine.is_partial("abc", "abcdefghij")
        assert not engine.is_partial("", "abc")


class TestCascade:
    def test_uuid_wins_even_when_names_differ(self):
        c = customer('C-1', 'ACME', external_reference='C1')
        clients = [client('L-1', 'Totally Different', external_reference='C1'),
                   client('L-2', 'ACME')]
        matched, level, ambiguous = engine.match_customer(c, clients)
        assert matched.id == 'L-1'
        assert level == 'uuid'
        assert ambiguous == []

    def test_siren_before_names(self):
        c = customer('C-1', 'Garage Leroy', reg_no='552100554')
        clients = [client('L-1', 'Garage Leroy'), client('L-2', 'Leroy Auto', siren='552 100 554')]
        matched, level, _ = engine.match_customer(c, clients)
        assert (matched.id, level) == ('L-2', 'siren')

    def test_legal_form_stripped_before_partial(self):
        c = customer('C-1', 'BOULANGERIE MARTIN')
        matched, level, _ = engine.match_customer(c, [client('L-1', 'Boulangerie Martin SARL')])
        assert matched.id == 'L-1'
        assert level == 'name_clean'

    def test_exact_name_is_accent_and_case_blind(self):
        c = customer('C-1', 'Pharmacie Centrale')
        matched, level, _ = engine.match_customer(c, [client('L-1', 'PHARMACIE CENTRALÉ')])
        assert level == 'name_exact'

    def test_partial_name(self):
        c = customer('C-1', 'Transports Moreau et Fils')
        matched, level, _ = engine.match_customer(c, [client('L-1', 'Transports Moreau')])
        assert (matched.id, level) == ('L-1', 'name_partial')

    def test_clean_partial_name(self):
        c = customer('C-1', 'SAS Imprimerie Vasseur Nord')
        matched, level, _ = engine.match_customer(c, [client('L-1', 'Imprimerie Vasseur SARL')])
        assert (matched.id, level) == ('L-1', 'name_clean_partial')

    def test_no_match(self):
        c = customer('C-1', 'Orphan Billing Co')
        matched, level, ambiguous = engine.match_customer(c, [client('L-1', 'Someone Else')])
        assert matched is None and level is None and ambiguous == []

    def test_tie_falls_through_to_weaker_tier(self):
        c = customer('C-1', 'Cave Saint Roch', reg_no='552100554')
        clients = [client('L-1', 'Cave Saint Roch', siren='552100554'),
                   client('L-2', 'Autre Cave', siren='552100554')]
        matched, level, _ = engine.match_customer(c, clients)
        assert (matched.id, level) == ('L-1', 'name_exact')

    def test_unresolved_tie_is_reported_as_ambiguous(self):
        c = customer('C-1', 'Fleurs de Loire')
        clients = [client('L-1', 'Fleurs de Loire'), client('L-2', 'FLEURS DE LOIRE')]
        matched, level, ambiguous = engine.match_customer(c, clients)
        assert matched is None and level is None
        assert [a.id for a in ambiguous] == ['L-1', 'L-2']

    def test_blank_name_never_matches_by_name(self):
        c = customer('C-1', '')
        matched, _, _ = engine.match_customer(c, [client('L-1', '')])
        assert matched is None


class TestMatchCustomers:
    def _run(self, customers, clients, subscribed):
        return engine.match_customers(customers, clients, 'Alpha', set(subscribed))

    def test_partitions(self):
        customers = [customer('C-1', 'Alpha Conseil'), customer('C-2', 'Unknown Corp'),
                     customer('C-3', 'Prospect')]
        clients = [client('L-1', 'Alpha Conseil'), client('L-2', 'Client Disparu'),
                   client('L-3', 'Other Firm', cabinet='Beta')]
        out = self._run(customers, clients, ['C-1', 'C-2'])
        assert [m.customer.id for m in out['matches']] == ['C-1']
        assert [u.customer.id for u in out['clients_new']] == ['C-2']
        assert [c.id for c in out['clients_no_subscription']] == ['C-3']
        # Missing clients are limited to the cabinet being previewed
        assert [m.client.id for m in out['clients_missing']] == ['L-2']

    def test_inactive_clients_are_not_matched(self):
        customers = [customer('C-1', 'Atelier Ferme', reg_no='732829320')]
        clients = [client('L-1', 'Atelier Ferme SAS', siren='732829320', active=False)]
        out = self._run(customers, clients, ['C-1'])
        assert out['matches'] == []
        assert [u.customer.id for u in out['clients_new']] == ['C-1']
        assert out['inactive_matches'][0]['client'].id == 'L-1'
        assert out['inactive_matches'][0]['level'] == 'siren'

    def test_cabinet_change(self):
        customers = [customer('C-1', 'Menuiserie Bernard', external_reference='R1')]
        clients = [client('L-1', 'Menuiserie Bernard', external_reference='R1', cabinet='Beta')]
        out = self._run(customers, clients, ['C-1'])
        change = out['matches'][0].cabinet_change
        assert (change.old, change.new) == ('Beta', 'Alpha')

    def test_no_cabinet_change_when_cabinet_unset(self):
        customers = [customer('C-1', 'Menuiserie Bernard')]
        clients = [client('L-1', 'Menuiserie Bernard', cabinet=None)]
        out = self._run(customers, clients, ['C-1'])
        assert out['matches'][0].cabinet_change is None

    def test_level_label(self):
        out = self._run([customer('C-1', 'Alpha Conseil')], [client('L-1', 'Alpha Conseil')], ['C-1'])
        assert out['matches'][0].level_label == engine.MATCH_LEVEL_LABELS['name_exact']

    def test_deterministic(self, dataset):
        from billing_api import parse_customer
        from schemas import LocalClient
        customers = [parse_customer(c) for c in dataset['customers']]
        clients = [LocalClient.model_validate(c) for c in dataset['clients']]
        subscribed = {s['customer']['id'] for s in dataset['subscriptions']}
        first = engine.match_customers(customers, clients, 'Demo Cabinet', subscribed)
        second = engine.match_customers(customers, clients, 'Demo Cabinet', subscribed)
        assert [(m.customer.id, m.client.id, m.level) for m in first['matches']] == \
            [(m.customer.id, m.client.id, m.level) for m in second['matches']]
        levels = {m.customer.id: m.level for m in first['matches']}
        for cid, level in dataset['ground_truth']['levels'].items():
            assert levels[cid] == level
