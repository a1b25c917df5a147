import os
import sys
import tempfile
import unittest
from pathlib import Path

APIHELPERS_SRC = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(APIHELPERS_SRC))

from shared_podio.cache import SnapshotCache
from shared_podio.session import SESSION_DURATION, SessionManager
from shared_podio.storage import SESSION_EXPIRY_KEY, DotenvStorage, MemoryStorage, find_env_file


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class DotenvStorageTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.env_file = os.path.join(self._tmp.name, '.env')
        self.storage = DotenvStorage(self.env_file)

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_file_reads_none(self):
        self.assertIsNone(self.storage.get('PODIO_ACCESS_TOKEN'))
        self.storage.delete('PODIO_ACCESS_TOKEN')
        self.assertFalse(os.path.exists(self.env_file))

    def test_set_creates_file_and_persists(self):
        self.storage.set('PODIO_ACCESS_TOKEN', 'abc')

        self.assertTrue(os.path.exists(self.env_file))
        self.assertEqual(DotenvStorage(self.env_file).get('PODIO_ACCESS_TOKEN'), 'abc')

    def test_set_overwrites(self):
        self.storage.set('PODIO_ACCESS_TOKEN', 'abc')
        self.storage.set('PODIO_ACCESS_TOKEN', 'def')

        self.assertEqual(self.storage.get('PODIO_ACCESS_TOKEN'), 'def')

    def test_delete(self):
        self.storage.set('PODIO_ACCESS_TOKEN', 'abc')
        self.storage.set('PODIO_CLIENT_ID', 'keep-me')

        self.storage.delete('PODIO_ACCESS_TOKEN')

        self.assertIsNone(self.storage.get('PODIO_ACCESS_TOKEN'))
        self.assertEqual(self.storage.get('PODIO_CLIENT_ID'), 'keep-me')

    def test_json_values_survive(self):
        value = '{"limited": true, "limit_until": 1000030.0}'
        self.storage.set('PODIO_RATE_LIMIT_INFO', value)

        self.assertEqual(self.storage.get('PODIO_RATE_LIMIT_INFO'), value)

    def test_find_env_file_walks_up(self):
        Path(self.env_file).touch()
        nested = os.path.join(self._tmp.name, 'a', 'b')
        os.makedirs(nested)
        cwd = os.getcwd()
        try:
            os.chdir(nested)
            self.assertEqual(os.path.realpath(find_env_file()), os.path.realpath(self.env_file))
        finally:
            os.chdir(cwd)


class MemoryStorageTests(unittest.TestCase):
    def test_round_trip(self):
        storage = MemoryStorage({'A': '1'})
        storage.set('B', '2')
        storage.delete('A')
        storage.delete('missing')

        self.assertIsNone(storage.get('A'))
        self.assertEqual(storage.get('B'), '2')
        self.assertEqual(storage.keys(), ['B'])


class SessionManagerTests(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryStorage()
        self.clock = FakeClock()
        self.session = SessionManager(self.storage, clock=self.clock)

    def test_no_session(self):
        self.assertFalse(self.session.is_valid())
        self.assertEqual(self.session.remaining(), 0)

    def test_start_and_expire(self):
        expiry = self.session.start()

        self.assertEqual(expiry, self.clock.now + SESSION_DURATION)
        self.assertEqual(self.storage.get(SESSION_EXPIRY_KEY), str(expiry))
        self.assertTrue(self.session.is_valid())
        self.assertEqual(self.session.remaining(), SESSION_DURATION)

        self.clock.now += SESSION_DURATION
        self.assertFalse(self.session.is_valid())

    def test_extend(self):
        self.session.start()
        self.clock.now += 3600
        self.session.extend()

        self.assertEqual(self.session.remaining(), SESSION_DURATION)

    def test_end(self):
        self.session.start()
        self.session.end()

        self.assertFalse(self.session.is_valid())
        self.assertIsNone(self.storage.get(SESSION_EXPIRY_KEY))

    def test_corrupt_expiry(self):
        self.storage.set(SESSION_EXPIRY_KEY, 'tomorrow')

        self.assertFalse(self.session.is_valid())


class SnapshotCacheTests(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryStorage()
        self.cache = SnapshotCache(self.storage)

    def test_put_get(self):
        self.cache.put('specs_101', [{'id': 555}])

        self.assertEqual(self.cache.get('specs_101'), [{'id': 555}])
        self.assertIn('PODIO_CACHE_SPECS_101', self.storage.keys())

    def test_missing(self):
        self.assertIsNone(self.cache.get('user'))

    def test_corrupt_entry_dropped(self):
        self.storage.set('PODIO_CACHE_USER', '{not json')

        self.assertIsNone(self.cache.get('user'))
        self.assertIsNone(self.storage.get('PODIO_CACHE_USER'))

    def test_delete(self):
        self.cache.put('user', {'id': 1})
        self.cache.put('spec_555', {'id': 555})

        self.cache.delete('spec_555')

        self.assertIsNone(self.cache.get('spec_555'))
        self.assertEqual(self.cache.get('user'), {'id': 1})

    def test_clear_leaves_other_keys(self):
        self.storage.set('PODIO_ACCESS_TOKEN', 'token')
        self.cache.put('user', {'id': 1})
        self.cache.put('specs_101', [])

        self.cache.clear()

        self.assertIsNone(self.cache.get('user'))
        self.assertIsNone(self.cache.get('specs_101'))
        self.assertEqual(self.storage.keys(), ['PODIO_ACCESS_TOKEN'])

    def test_prefix_isolates_accounts(self):
        other = SnapshotCache(self.storage, prefix='PODIO_CACHE_2_')
        self.cache.put('user', {'id': 1})
        other.put('user', {'id': 2})

        self.assertEqual(self.cache.get('user'), {'id': 1})
        self.assertEqual(other.get('user'), {'id': 2})


if __name__ == '__main__':
    unittest.main()
