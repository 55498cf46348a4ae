"""Package marker for the *pgwrapper* namespace."""

from importlib import import_module as _imp

# Re-export the public API of *wrapper.py* at package level so that callers
# can simply ``import pgwrapper``.

_mod = _imp("pgwrapper.wrapper")

for _name in getattr(_mod, "__all__", ()):
    globals()[_name] = getattr(_mod, _name)

del _imp, _mod, _name
