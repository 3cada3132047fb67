
# Severity levels, in increasing order. These are numerically compatible with
# the stdlib 'logging' levels: NOISY is DEBUG, OPERATIONAL is INFO, WEIRD is
# WARNING, and BAD is ERROR.

NOISY = 10
OPERATIONAL = 20
UNUSUAL = 23
INFREQUENT = 25
CURIOUS = 28
WEIRD = 30
SCARY = 35
BAD = 40
