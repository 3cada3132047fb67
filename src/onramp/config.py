# Process-wide defaults. Assign to these (before sessions are created) or
# pass the equivalent constructor arguments to override them.

# Twisted client endpoint descriptions for the two control channels.
SAM_ADDR = "tcp:127.0.0.1:7656"
TOR_CONTROL = "tcp:127.0.0.1:9051"

GARLIC_NAME = "onramp-garlic"
ONION_NAME = "onramp-onion"

# the virtual port published by onion services
ONION_PORT = 80

# keystore directory names, relative to the keystore base directory
KEYSTORE_DIRS = {
    "i2p": "i2pkeys",
    "onion": "onionkeys",
    "tls": "tlskeys",
    }

# I2P tunnel option presets, as "key=value" strings.

# Suitable for shuffling a lot of traffic. If unused, this will waste
# resources.
OPT_HUGE = ["inbound.length=3", "outbound.length=3",
            "inbound.lengthVariance=1", "outbound.lengthVariance=1",
            "inbound.backupQuantity=3", "outbound.backupQuantity=3",
            "inbound.quantity=6", "outbound.quantity=6"]

OPT_LARGE = ["inbound.length=3", "outbound.length=3",
             "inbound.lengthVariance=1", "outbound.lengthVariance=1",
             "inbound.backupQuantity=1", "outbound.backupQuantity=1",
             "inbound.quantity=4", "outbound.quantity=4"]

# Fewer hops, more tunnels: lower latency, weaker anonymity.
OPT_WIDE = ["inbound.length=1", "outbound.length=2",
            "inbound.lengthVariance=1", "outbound.lengthVariance=1",
            "inbound.backupQuantity=2", "outbound.backupQuantity=2",
            "inbound.quantity=3", "outbound.quantity=3"]

OPT_MEDIUM = ["inbound.length=3", "outbound.length=3",
              "inbound.lengthVariance=1", "outbound.lengthVariance=1",
              "inbound.backupQuantity=0", "outbound.backupQuantity=0",
              "inbound.quantity=2", "outbound.quantity=2"]

OPT_DEFAULTS = ["inbound.length=3", "outbound.length=3",
                "inbound.lengthVariance=0", "outbound.lengthVariance=0",
                "inbound.backupQuantity=1", "outbound.backupQuantity=1",
                "inbound.quantity=1", "outbound.quantity=1"]

# Only for small dataflows and short-lived connections.
OPT_SMALL = ["inbound.length=3", "outbound.length=3",
             "inbound.lengthVariance=1", "outbound.lengthVariance=1",
             "inbound.backupQuantity=0", "outbound.backupQuantity=0",
             "inbound.quantity=1", "outbound.quantity=1"]

def options_to_dict(options):
    """Turn ["key=value", ..] into {"key": "value", ..}. Entries without an
    '=' are ignored."""
    d = {}
    for opt in options or []:
        if "=" not in opt:
            continue
        k, v = opt.split("=", 1)
        d[k.strip()] = v.strip()
    return d
