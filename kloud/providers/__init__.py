"""Cloud backends.

Provider modules are imported lazily by :mod:`kloud.providers.registry` so
that SDK dependencies are only loaded for the backends actually configured.
"""

from kloud.providers.base import BaseProvider, Progress

__all__ = ["BaseProvider", "Progress"]
