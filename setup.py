#!/usr/bin/env python

import os, re
from setuptools import setup, Command

def get_version():
    fn = os.path.join(os.path.dirname(os.path.abspath(__file__)),
                      "src", "onramp", "_version.py")
    with open(fn) as f:
        mo = re.search(r'^verstr = "([^"]+)"', f.read(), re.M)
    return mo.group(1)

commands = {}

class Trial(Command):
    description = "run trial"
    user_options = []

    def initialize_options(self):
        pass
    def finalize_options(self):
        pass
    def run(self):
        import sys
        from twisted.scripts import trial
        sys.argv = ["trial", "--rterrors", "onramp.test"]
        trial.run()  # does not return
commands["trial"] = Trial
commands["test"] = Trial

trove_classifiers = [
    "Development Status :: 3 - Alpha",
    "Operating System :: OS Independent",
    "License :: OSI Approved :: MIT License",
    "Programming Language :: Python",
    "Programming Language :: Python :: 3.8",
    "Programming Language :: Python :: 3.9",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: Implementation :: CPython",
    "Topic :: Internet",
    "Topic :: Security :: Cryptography",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Topic :: System :: Networking",
    ]

setup_args = {
    "name": "onramp",
    "version": get_version(),
    "description": "onramp publishes and dials services over I2P and Tor.",
    "license": "MIT",
    "long_description": """\
onramp hands a Twisted program ready-made listeners and dialers on the I2P
and Tor anonymizing networks. Identities (I2P destinations and v3 onion
service keys) are kept in a small on-disk keystore, so a service keeps its
address across restarts. It also bootstraps self-signed TLS certificates for
those addresses, routes dials to the right network by hostname, and can relay
an existing TCP service onto either network.
""",
    "classifiers": trove_classifiers,
    "platforms": ["any"],

    "package_dir": {"": "src"},
    "packages": ["onramp", "onramp.logging", "onramp.connections",
                 "onramp.test"],
    "cmdclass": commands,
    "install_requires": ["twisted[tls] >= 22.8.0", "pyOpenSSL",
                         "cryptography >= 42.0.0", "zope.interface",
                         "txtorcon >= 19.0.0", "txi2p-tahoe >= 0.3.5"],
    "extras_require": {
        "dev": ["mock"],
        "test": ["mock"],
        },
    "python_requires": ">=3.8",
}

setup_args.update(
    include_package_data=True,
)

if __name__ == "__main__":
    setup(**setup_args)
