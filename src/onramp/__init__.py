"""onramp"""

from onramp._version import verstr as __version__

# Application code should import names from onramp.api instead.

# hush pyflakes
_unused = [__version__]
del _unused
