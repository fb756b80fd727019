"""
Tests for SalesTracker.core.sync: debounced pushes, pulls and snapshot merging.

Run:
    python -m unittest tests.test_sync
"""
from SalesTracker.core import database
from SalesTracker.core.sync import SyncAPI, SyncState, merge_snapshot
from SalesTracker.settings import lib
from tests.base import BaseTestCase, process_events, wait_until


def remote_snapshot(**fields):
    data = lib.default_user_data(display_name='remote')
    data.update(fields)
    return data


class MergeSnapshotTests(BaseTestCase):

    def test_remote_collections_win_wholesale(self):
        local = lib.default_user_data()
        local['transactions'] = [{'id': 1, 'kind': 'issue', 'amount': 0, 'quantity': 1}]
        local['stock']['jawwy'] = 9
        remote = {'transactions': [{'id': 2, 'kind': 'device', 'amount': 40, 'quantity': 1}],
                  'stock': {'jawwy': 1, 'sawa': 0, 'multi': 0}}

        merged = merge_snapshot(local, remote)
        self.assertEqual([t['id'] for t in merged['transactions']], [2])
        self.assertEqual(merged['stock']['jawwy'], 1)
        # fields the remote does not carry stay local
        self.assertEqual(merged['fuelLogs'], local['fuelLogs'])

    def test_price_config_backfill(self):
        local = lib.default_user_data()
        remote = {'transactions': [], 'settings': {
            'displayName': 'R',
            'priceConfig': {'jawwy': [31, 26, 21], 'sawa': [29, 25, 21]},
        }}

        settings = merge_snapshot(local, remote)['settings']
        self.assertEqual(settings['priceConfig']['jawwy'], [31, 26, 21])
        self.assertEqual(settings['priceConfig']['sawa'], [29, 25, 21])
        self.assertEqual(settings['priceConfig']['multi'], [28, 24, 20])
        self.assertEqual(settings['displayName'], 'R')
        self.assertEqual(settings['weeklyTarget'], 3000)

    def test_local_settings_kept_when_remote_has_none(self):
        local = lib.default_user_data()
        local['settings']['theme'] = 'dark'
        merged = merge_snapshot(local, {'transactions': []})
        self.assertEqual(merged['settings']['theme'], 'dark')

    def test_inputs_untouched(self):
        local = lib.default_user_data()
        remote = remote_snapshot()
        merged = merge_snapshot(local, remote)
        merged['transactions'].append({'id': 1})
        self.assertEqual(local['transactions'], [])
        self.assertEqual(remote['transactions'], [])


class PushTests(BaseTestCase):

    def test_push(self):
        self.login()
        self.session.add_transaction('device', 50)

        self.assertTrue(self.sync.push())
        self.assertFalse(self.sync.has_pending)

        upload = self.remote.uploads[-1]
        self.assertEqual(upload['username'], 'khaled')
        self.assertIsNone(upload['identityList'])
        self.assertEqual(upload['data']['transactions'], self.session.data['transactions'])
        self.assertIn('lastSyncTimestamp', upload['data'])

        # the push time is kept locally without scheduling another push
        self.assertEqual(self.session.data['lastSyncTimestamp'], upload['data']['lastSyncTimestamp'])
        self.assertEqual(self.sync.last_sync, upload['data']['lastSyncTimestamp'])
        self.assertFalse(self.sync.has_pending)

    def test_admin_push_carries_identity_list(self):
        self.login('talal', '00966')
        self.assertTrue(self.sync.push())
        identity_list = self.remote.uploads[-1]['identityList']
        self.assertEqual([u['username'] for u in identity_list], ['talal', 'khaled'])

    def test_push_without_session(self):
        self.assertFalse(self.sync.push())
        self.assertEqual(self.remote.uploads, [])

    def test_push_failure(self):
        self.login()
        self.session.add_transaction('device', 50)
        before = self.session.data
        results = []
        self.sync.pushFinished.connect(results.append)

        self.remote.fail = True
        self.assertFalse(self.sync.push())
        self.assertEqual(results, [False])
        self.assertEqual(self.session.data, before)
        self.assertEqual(self.app.store.get_json(database.data_key('khaled')), before)
        self.assertIsNone(self.sync.last_sync)
        self.assertEqual(self.sync.state, SyncState.Idle)

    def test_state_changes(self):
        self.login()
        states = []
        self.sync.stateChanged.connect(states.append)
        self.sync.push()
        self.assertEqual(states, ['syncing', 'idle'])

    def test_mutations_are_debounced_into_one_push(self):
        self.login()
        self.session.add_transaction('device', 10)
        self.session.add_transaction('device', 20)
        self.session.update_stock('jawwy', 3, 'add')
        self.assertTrue(self.sync.has_pending)
        self.assertEqual(self.remote.uploads, [])

        self.assertTrue(wait_until(lambda: len(self.remote.uploads) == 1 and not self.sync.is_syncing))
        process_events(0.2)

        self.assertEqual(len(self.remote.uploads), 1)
        data = self.remote.uploads[0]['data']
        self.assertEqual(len(data['transactions']), 2)
        self.assertEqual(data['stock']['jawwy'], 3)

    def test_user_edits_schedule_push(self):
        self.login('talal', '00966')
        self.session.add_user('omar', '1')
        self.assertTrue(self.sync.has_pending)
        self.assertTrue(wait_until(lambda: len(self.remote.uploads) == 1))
        names = [u['username'] for u in self.remote.uploads[0]['identityList']]
        self.assertIn('omar', names)

    def test_save_now_bypasses_debounce(self):
        self.sync.set_debounce(60000)
        self.login()
        self.session.add_transaction('device', 10)
        self.assertTrue(self.sync.has_pending)

        results = []
        self.sync.pushFinished.connect(results.append)
        self.assertIsNone(self.sync.save_now())
        self.assertFalse(self.sync.has_pending)
        self.assertTrue(wait_until(lambda: results == [True]))
        self.assertEqual(len(self.remote.uploads), 1)

    def test_async_push_failure(self):
        self.login()
        self.remote.fail = True
        results = []
        self.sync.pushFinished.connect(results.append)
        self.sync.save_now()
        self.assertTrue(wait_until(lambda: results == [False]))
        self.assertEqual(self.sync.state, SyncState.Idle)

    def test_logout_flushes_pending_push(self):
        self.sync.set_debounce(60000)
        self.login()
        self.session.add_transaction('device', 10)

        self.session.logout()
        self.assertTrue(wait_until(lambda: len(self.remote.uploads) == 1))
        upload = self.remote.uploads[0]
        self.assertEqual(upload['username'], 'khaled')
        self.assertEqual(len(upload['data']['transactions']), 1)

    def test_shutdown_pushes_pending_change(self):
        self.sync.set_debounce(60000)
        self.login()
        self.session.add_transaction('device', 10)
        self.app.shutdown()
        self.assertEqual(len(self.remote.uploads), 1)


class PullTests(BaseTestCase):

    def test_pull_merges_remote_snapshot(self):
        self.remote.records['khaled'] = {'data': remote_snapshot(
            transactions=[{'id': 7, 'timestamp': '2025-01-01T00:00:00+00:00', 'kind': 'device',
                           'amount': 40, 'quantity': 1}],
            settings={'displayName': 'Khaled R', 'priceConfig': {'jawwy': [1, 2, 3]}},
        )}
        self.login()

        self.assertTrue(self.sync.pull())
        data = self.session.data
        self.assertEqual([t['id'] for t in data['transactions']], [7])
        self.assertEqual(data['settings']['displayName'], 'Khaled R')
        self.assertEqual(data['settings']['priceConfig']['jawwy'], [1, 2, 3])
        self.assertEqual(data['settings']['priceConfig']['multi'], [28, 24, 20])
        self.assertEqual(self.app.store.get_json(database.data_key('khaled')), data)
        self.assertIsNotNone(self.sync.last_sync)

        # a merged pull is not pushed back
        self.assertFalse(self.sync.has_pending)
        process_events(0.2)
        self.assertEqual(self.remote.uploads, [])

    def test_pull_overwrites_unpushed_local_edits(self):
        self.sync.set_debounce(60000)
        self.remote.records['khaled'] = {'data': remote_snapshot(
            transactions=[{'id': 7, 'timestamp': '2025-01-01T00:00:00+00:00', 'kind': 'device',
                           'amount': 40, 'quantity': 1}],
        )}
        self.login()
        self.session.add_transaction('issue', 0)

        self.assertTrue(self.sync.pull())
        self.assertEqual([t['id'] for t in self.session.data['transactions']], [7])

    def test_pull_top_level_snapshot(self):
        self.remote.records['khaled'] = {'transactions': [], 'stock': {'jawwy': 4, 'sawa': 0, 'multi': 0}}
        self.login()
        self.assertTrue(self.sync.pull())
        self.assertEqual(self.session.data['stock']['jawwy'], 4)

    def test_pull_unknown_user(self):
        self.login()
        before = self.session.data
        self.assertFalse(self.sync.pull())
        self.assertEqual(self.session.data, before)

    def test_pull_failure(self):
        self.login()
        self.session.update_stock('sawa', 2, 'add')
        before = self.session.data
        self.remote.fail = True

        self.assertFalse(self.sync.pull())
        self.assertEqual(self.session.data, before)
        self.assertEqual(self.app.store.get_json(database.data_key('khaled')), before)

    def test_admin_pull_replaces_identity_list(self):
        self.login('talal', '00966')
        self.session.add_user('a', 'first')
        self.remote.records['talal'] = {
            'data': remote_snapshot(),
            'identityList': [
                {'id': 30, 'username': 'a', 'secret': 'second', 'displayName': 'A', 'role': 'member'},
                {'id': 31, 'username': 'b', 'secret': 'b', 'displayName': 'B', 'role': 'member'},
            ],
        }

        self.assertTrue(self.sync.pull())
        users = self.identities.users()
        self.assertEqual([u.username for u in users], ['a', 'b'])
        self.assertEqual(users[0].secret, 'second')

    def test_member_pull_leaves_identity_list(self):
        self.login()
        self.remote.records['khaled'] = {
            'data': remote_snapshot(),
            'identityList': [{'id': 31, 'username': 'b', 'secret': 'b', 'role': 'member'}],
        }
        self.assertTrue(self.sync.pull())
        self.assertIsNone(self.identities.find('b'))
        self.assertIsNotNone(self.identities.find('talal'))

    def test_pull_on_activation(self):
        self.sync.pull_on_activate = True
        self.remote.records['khaled'] = {'data': remote_snapshot(stock={'jawwy': 6, 'sawa': 0, 'multi': 0})}
        results = []
        self.sync.pullFinished.connect(results.append)

        self.login()
        self.assertTrue(wait_until(lambda: results == [True]))
        self.assertEqual(self.session.data['stock']['jawwy'], 6)
        self.assertEqual(self.sync.state, SyncState.Idle)

    def test_restore_session_pulls(self):
        self.login()
        self.sync.shutdown()

        self.remote.records['khaled'] = {'data': remote_snapshot(stock={'jawwy': 2, 'sawa': 0, 'multi': 0})}
        other = self.create_app()
        other.sync.pull_on_activate = True
        results = []
        other.sync.pullFinished.connect(results.append)
        try:
            self.assertTrue(other.start())
            self.assertTrue(wait_until(lambda: results == [True]))
            self.assertEqual(other.session.data['stock']['jawwy'], 2)
        finally:
            other.sync.shutdown()

    def test_result_for_inactive_user_is_discarded(self):
        self.login()
        record = {'data': remote_snapshot(stock={'jawwy': 9, 'sawa': 0, 'multi': 0})}
        self.session.logout()
        self.login('talal', '00966')

        self.assertFalse(self.sync.apply_remote('khaled', record))
        self.assertEqual(self.session.data['stock']['jawwy'], 0)

    def test_pull_now_without_remote_record_keeps_pending_push(self):
        self.sync.set_debounce(300)
        self.login()
        self.session.add_transaction('device', 10)
        self.assertFalse(self.sync.pull_now(blocking=True))
        self.assertEqual(self.remote.fetches, ['khaled'])
        self.assertTrue(self.sync.has_pending)

        self.assertTrue(wait_until(lambda: len(self.remote.uploads) == 1))
        self.assertEqual(len(self.remote.uploads[0]['data']['transactions']), 1)

    def test_failed_async_pull_now_keeps_pending_push(self):
        self.sync.set_debounce(60000)
        self.login()
        self.session.add_transaction('device', 10)
        results = []
        self.sync.pullFinished.connect(results.append)

        self.remote.fail = True
        self.assertIsNone(self.sync.pull_now())
        self.assertTrue(wait_until(lambda: results == [False]))
        self.assertTrue(self.sync.has_pending)
        self.assertEqual(self.remote.uploads, [])

        self.remote.fail = False
        self.session.logout()
        self.assertTrue(wait_until(lambda: len(self.remote.uploads) == 1))
        self.assertEqual(len(self.remote.uploads[0]['data']['transactions']), 1)

    def test_merged_pull_now_drops_pending_push(self):
        self.sync.set_debounce(60000)
        self.remote.records['khaled'] = {'data': remote_snapshot()}
        self.login()
        self.session.add_transaction('device', 10)
        self.assertTrue(self.sync.has_pending)

        self.assertTrue(self.sync.pull_now(blocking=True))
        self.assertFalse(self.sync.has_pending)
        self.assertEqual(self.session.data['transactions'], [])


class ConfigTests(BaseTestCase):

    def make_config(self, debounce_ms):
        config = lib.SettingsAPI(root_dir=f'{self.temp_dir}/other')
        config.set_section('sync', {'debounce_ms': debounce_ms, 'pull_on_activate': True})
        config.set_section('remote', {'url': '', 'timeout': 1, 'max_attempts': 4, 'retry_wait': 2})
        return config

    def test_options_read_from_given_config(self):
        sync = SyncAPI(self.session, self.remote, self.identities, config=self.make_config(1234))
        try:
            self.assertEqual(sync.debounce_ms, 1234)
            self.assertTrue(sync.pull_on_activate)
            self.assertEqual(sync.max_attempts, 4)
            self.assertEqual(sync.retry_wait, 2)
        finally:
            sync.shutdown()

    def test_explicit_options_win(self):
        sync = SyncAPI(self.session, self.remote, self.identities,
                       debounce_ms=10, max_attempts=1, config=self.make_config(1234))
        try:
            self.assertEqual(sync.debounce_ms, 10)
            self.assertEqual(sync.max_attempts, 1)
            self.assertEqual(sync.retry_wait, 2)
        finally:
            sync.shutdown()

    def test_defaults_to_application_settings(self):
        sync = SyncAPI(self.session, self.remote, self.identities)
        try:
            self.assertEqual(sync.debounce_ms, 50)
            self.assertFalse(sync.pull_on_activate)
        finally:
            sync.shutdown()
