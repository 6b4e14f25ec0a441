import asyncio

from redis.exceptions import ConnectionError as RedisConnectionError


class _FakePipeline:
    """
    Queues commands and replays them on the parent FakeRedis in execute().
    Mirrors redis.asyncio pipelines: queuing calls are sync, execute() awaits.
    """
    def __init__(self, parent, transaction=True):
        self.parent = parent
        self.transaction = transaction
        self.cmds = []

    def __getattr__(self, name):
        if name not in FakeRedis.COMMANDS:
            raise AttributeError(name)

        def _queue(*args, **kwargs):
            self.cmds.append((name, args, kwargs))
            return self
        return _queue

    async def execute(self):
        self.parent._check("execute")
        out = []
        for name, args, kwargs in self.cmds:
            out.append(getattr(self.parent, "_" + name)(*args, **kwargs))
        self.cmds = []
        self.parent.executed_pipelines += 1
        return out


class FakeRedis:
    """
    In-process stand-in for `redis.asyncio.Redis(decode_responses=True)`,
    covering the commands the alert store uses. Every awaited call yields to
    the loop once so concurrent callers really interleave.

    Failure injection:
      - `down = True` makes every command raise redis ConnectionError
      - `fail_next[name] = n` fails the next n calls of that command
    """
    COMMANDS = {
        "hgetall", "hset", "zadd", "zrange", "zrem", "zcard", "sadd", "srem", "smembers",
        "set", "get", "incr", "lpush", "ltrim", "lrange",
    }

    def __init__(self):
        self.hashes = {}
        self.zsets = {}
        self.sets = {}
        self.strings = {}
        self.lists = {}
        self.down = False
        self.fail_next = {}
        self.calls = []
        self.executed_pipelines = 0
        self.closed = False

    def _check(self, name):
        if self.down:
            raise RedisConnectionError("fake redis is down")
        n = self.fail_next.get(name, 0)
        if n > 0:
            self.fail_next[name] = n - 1
            raise RedisConnectionError(f"fake failure on {name}")

    def __getattr__(self, name):
        if name not in FakeRedis.COMMANDS:
            raise AttributeError(name)

        async def _call(*args, **kwargs):
            await asyncio.sleep(0)
            self._check(name)
            self.calls.append(name)
            return getattr(self, "_" + name)(*args, **kwargs)
        return _call

    def pipeline(self, transaction=True):
        return _FakePipeline(self, transaction=transaction)

    async def aclose(self):
        self.closed = True

    # ---- command implementations ----

    def _hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def _hset(self, key, field=None, value=None, mapping=None):
        h = self.hashes.setdefault(key, {})
        added = 0
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        for k, v in items.items():
            if k not in h:
                added += 1
            h[k] = str(v)
        return added

    def _zadd(self, key, mapping):
        z = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in z)
        z.update({str(m): float(s) for m, s in mapping.items()})
        return added

    def _zrange(self, key, start, end):
        z = self.zsets.get(key, {})
        ordered = [m for m, _ in sorted(z.items(), key=lambda kv: (kv[1], kv[0]))]
        end = len(ordered) if end == -1 else end + 1
        return ordered[start:end]

    def _zrem(self, key, *members):
        z = self.zsets.get(key, {})
        return sum(1 for m in members if z.pop(str(m), None) is not None)

    def _zcard(self, key):
        return len(self.zsets.get(key, {}))

    def _sadd(self, key, *members):
        s = self.sets.setdefault(key, set())
        before = len(s)
        s.update(str(m) for m in members)
        return len(s) - before

    def _srem(self, key, *members):
        s = self.sets.get(key, set())
        before = len(s)
        s.difference_update(str(m) for m in members)
        return before - len(s)

    def _smembers(self, key):
        return set(self.sets.get(key, set()))

    def _set(self, key, value, nx=False):
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        return True

    def _get(self, key):
        return self.strings.get(key)

    def _incr(self, key):
        v = int(self.strings.get(key, 0)) + 1
        self.strings[key] = str(v)
        return v

    def _lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, str(v))
        return len(lst)

    def _ltrim(self, key, start, end):
        lst = self.lists.get(key, [])
        end = len(lst) if end == -1 else end + 1
        self.lists[key] = lst[start:end]
        return True

    def _lrange(self, key, start, end):
        lst = self.lists.get(key, [])
        end = len(lst) if end == -1 else end + 1
        return lst[start:end]
