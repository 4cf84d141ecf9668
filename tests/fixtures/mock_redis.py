import threading

import redis


class MockPipeline:
    """WATCH/MULTI/EXEC over MockRedisClient, enough for optimistic CAS."""

    def __init__(self, client):
        self.client = client
        self._watched = {}
        self._queued = []
        self._multi = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.reset()
        return False

    def watch(self, *keys):
        for k in keys:
            self._watched[k] = self.client.versions.get(k, 0)

    def multi(self):
        self._multi = True

    def get(self, k):
        if self._multi:
            self._queued.append(('get', (k,), {}))
            return self
        return self.client.get(k)

    def set(self, k, v, **kw):
        self._queued.append(('set', (k, v), kw))
        return self

    def expireat(self, k, when):
        self._queued.append(('expireat', (k, when), {}))
        return self

    def execute(self):
        if self.client.before_execute is not None:
            hook, self.client.before_execute = self.client.before_execute, None
            hook()
        with self.client.lock:
            for k, version in self._watched.items():
                if self.client.versions.get(k, 0) != version:
                    self.reset()
                    raise redis.WatchError('watched key changed')
            results = [getattr(self.client, name)(*args, **kw) for name, args, kw in self._queued]
        self.reset()
        return results

    def reset(self):
        self._watched = {}
        self._queued = []
        self._multi = False


class MockRedisClient:
    def __init__(self, fail=False):
        self.store = {}
        self.expirations = {}
        self.versions = {}
        self.fail = fail
        self.lock = threading.RLock()
        # one-shot callable run inside the next pipeline EXEC, before the WATCH check
        self.before_execute = None

    def _check(self):
        if self.fail:
            raise redis.ConnectionError('connection refused')

    def _touch(self, k):
        self.versions[k] = self.versions.get(k, 0) + 1

    def get(self, k):
        self._check()
        return self.store.get(k)

    def set(self, k, v, ex=None, nx=False):
        self._check()
        if nx and k in self.store:
            return None
        self.store[k] = v
        self._touch(k)
        if ex:
            self.expirations[k] = ex
        return True

    def expireat(self, k, when):
        self._check()
        if k not in self.store:
            return False
        self.expirations[k] = when
        return True

    def delete(self, k):
        self._check()
        self.store.pop(k, None)
        self.expirations.pop(k, None)
        self._touch(k)

    def ping(self):
        self._check()
        return True

    def hget(self, k, field):
        self._check()
        return self.store.get(k, {}).get(field)

    def hset(self, k, field, value):
        self._check()
        self.store.setdefault(k, {})[field] = value
        self._touch(k)
        return 1

    def hdel(self, k, field):
        self._check()
        return 1 if self.store.get(k, {}).pop(field, None) is not None else 0

    def hgetall(self, k):
        self._check()
        return dict(self.store.get(k, {}))

    def incr(self, k):
        self._check()
        self.store[k] = int(self.store.get(k, 0)) + 1
        return self.store[k]

    def exists(self, k):
        return 1 if k in self.store else 0

    def pipeline(self):
        self._check()
        return MockPipeline(self)

    def flushall(self):
        self.store.clear()
        self.expirations.clear()
        self.versions.clear()
