"""
Tests for SalesTracker.core.auth: the identity list and credential resolution.

Run:
    python -m unittest tests.test_auth
"""
from SalesTracker.core import database
from SalesTracker.core.auth import IdentityRepository, IdentityResolver, User
from SalesTracker.core.service import RemoteStoreClient
from SalesTracker.settings import lib
from SalesTracker.status import status
from tests.base import BaseTestCase

REMOTE_USERS = [
    {'id': 1, 'username': 'talal', 'secret': '00966', 'displayName': 'Talal', 'role': 'admin'},
    {'id': 2, 'username': 'khaled', 'secret': '2030', 'displayName': 'Khaled', 'role': 'member'},
    {'id': 10, 'username': 'Sara', 'secret': '7788', 'displayName': 'Sara', 'role': 'member'},
]


class IdentityRepositoryTests(BaseTestCase):

    def test_seeded_users_present(self):
        names = [u.username for u in self.identities.users()]
        self.assertIn('talal', names)
        self.assertIn('khaled', names)
        self.assertTrue(self.identities.find('talal').is_admin)
        self.assertFalse(self.identities.find('khaled').is_admin)

    def test_seeded_users_restored_on_reload(self):
        self.app.store.put_json(database.IDENTITY_LIST_KEY, [
            {'id': 5, 'username': 'omar', 'secret': '1', 'role': 'member'},
        ])
        users = self.identities.reload()
        self.assertEqual({u.username for u in users}, {'talal', 'khaled', 'omar'})

    def test_find_is_case_insensitive(self):
        self.assertEqual(self.identities.find('TALAL').username, 'talal')
        self.assertIsNone(self.identities.find('nobody'))

    def test_match_requires_exact_secret(self):
        self.assertIsNotNone(self.identities.match('Khaled', '2030'))
        self.assertIsNone(self.identities.match('khaled', '2030 '))

    def test_add_user(self):
        edited = []
        self.identities.usersEdited.connect(lambda: edited.append(True))

        user = self.identities.add_user('omar', '4455', display_name='Omar')
        self.assertEqual(user.role, 'member')
        self.assertEqual(edited, [True])

        reloaded = IdentityRepository(self.app.store)
        self.assertEqual(reloaded.find('omar').secret, '4455')

    def test_add_user_rejects_duplicates(self):
        with self.assertRaises(status.UsernameTakenException):
            self.identities.add_user('KHALED', 'x')

    def test_add_user_validates(self):
        with self.assertRaises(ValueError):
            self.identities.add_user('  ', 'x')
        with self.assertRaises(ValueError):
            self.identities.add_user('omar', 'x', role='owner')

    def test_delete_seeded_user(self):
        for user_id in lib.SEEDED_USER_IDS:
            with self.assertRaises(status.SeededUserImmutableException):
                self.identities.delete_user(user_id)

    def test_delete_user_removes_snapshot(self):
        user = self.identities.add_user('omar', '1')
        self.app.store.put_json(database.data_key('omar'), {'transactions': []})

        self.assertTrue(self.identities.delete_user(user.id))
        self.assertIsNone(self.identities.find('omar'))
        self.assertIsNone(self.app.store.get(database.data_key('omar')))
        self.assertFalse(self.identities.delete_user(user.id))

    def test_merge_remote_wins(self):
        self.identities.add_user('sara', 'old')
        self.identities.merge(REMOTE_USERS)

        sara = [u for u in self.identities.users() if u.username.lower() == 'sara']
        self.assertEqual(len(sara), 1)
        self.assertEqual(sara[0].secret, '7788')

    def test_replace_is_verbatim(self):
        self.identities.replace([
            {'id': 20, 'username': 'a', 'secret': '1', 'role': 'member'},
            {'id': 21, 'username': 'b', 'secret': '2', 'role': 'member'},
        ])
        self.assertEqual([u.username for u in self.identities.users()], ['a', 'b'])

        stored = self.app.store.get_json(database.IDENTITY_LIST_KEY)
        self.assertEqual([u['username'] for u in stored], ['a', 'b'])

    def test_malformed_entries_skipped(self):
        self.identities.replace([
            {'username': 'no-id', 'secret': '1'},
            'not a dict',
            {'id': 22, 'username': 'ok', 'secret': '1'},
        ])
        self.assertEqual([u.username for u in self.identities.users()], ['ok'])

    def test_user_round_trip(self):
        user = User(id=3, username='x', secret='y', display_name='X', role='admin')
        self.assertEqual(User.from_dict(user.to_dict()), user)


class IdentityResolverTests(BaseTestCase):

    def test_local_hit_makes_no_remote_call(self):
        user = self.app.resolver.resolve('KhAlEd', '2030')
        self.assertEqual(user.username, 'khaled')
        self.assertEqual(self.remote.fetches, [])

    def test_wrong_secret_falls_through_to_remote(self):
        self.assertIsNone(self.app.resolver.resolve('khaled', 'wrong'))
        self.assertEqual(self.remote.fetches, [lib.ADMIN_USERNAME])

    def test_remote_hit_is_adopted(self):
        self.remote.records['talal'] = {'data': lib.default_user_data(), 'identityList': REMOTE_USERS}

        user = self.app.resolver.resolve('sara', '7788')
        self.assertEqual(user.username, 'Sara')
        self.assertEqual(self.remote.fetches, ['talal'])

        # persisted locally, the next resolution stays local
        repository = IdentityRepository(self.app.store)
        self.assertIsNotNone(repository.find('sara'))
        resolver = IdentityResolver(repository, self.remote)
        self.assertIsNotNone(resolver.resolve('SARA', '7788'))
        self.assertEqual(self.remote.fetches, ['talal'])

    def test_remote_miss(self):
        self.remote.records['talal'] = {'data': lib.default_user_data(), 'identityList': REMOTE_USERS}
        self.assertIsNone(self.app.resolver.resolve('sara', 'wrong'))
        self.assertIsNone(self.identities.find('sara'))

    def test_remote_without_identity_list(self):
        self.remote.records['talal'] = {'data': lib.default_user_data()}
        self.assertIsNone(self.app.resolver.resolve('sara', '7788'))

    def test_remote_failure_is_swallowed(self):
        self.remote.fail = True
        self.assertIsNone(self.app.resolver.resolve('sara', '7788'))

    def test_unconfigured_remote_is_swallowed(self):
        resolver = IdentityResolver(self.identities, RemoteStoreClient(''))
        self.assertIsNone(resolver.resolve('sara', '7788'))
        self.assertIsNotNone(resolver.resolve('talal', '00966'))
