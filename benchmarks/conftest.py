import os
import tempfile

_BENCH_HOME = tempfile.mkdtemp(prefix="achievement-watcher-bench-")
os.environ["XDG_CONFIG_HOME"] = os.path.join(_BENCH_HOME, "config")
os.environ["XDG_CACHE_HOME"] = os.path.join(_BENCH_HOME, "cache")
