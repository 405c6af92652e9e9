"""Root daolens package.

Contains software versions and other metadata.
"""

import importlib.metadata as _pkg

__version__ = _pkg.version('daolens')
__spec_version__ = '1.0'
