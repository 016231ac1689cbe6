#!/usr/bin/env python3
"""Setup script for redis_bloomfilter - scaling Bloom filter stored in Redis."""
from setuptools import setup

VERSION = "1.0.0"
DESCRIPTION = "Scaling Bloom filter backed by Redis"
LONG_DESCRIPTION = """
A Bloom filter whose bit arrays and element counters live in Redis, so that
any number of processes can share one filter.

Features:
- Optimal bit count and hash count from capacity and error rate
- Atomic check-and-set through a Lua script (Redis >= 2.6)
- Read-then-write fallback driver for servers without scripting
- Process-local bitarray driver for tests
- Scaling: new generations are appended as the filter fills up
- Per-write TTLs for expiring filters
- Pluggable digests (md5, sha1, sha256, sha512, xxHash)
"""

CLASSIFIERS = [
    "Development Status :: 5 - Production/Stable",
    "Intended Audience :: Developers",
    "License :: OSI Approved :: MIT License",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.8",
    "Programming Language :: Python :: 3.9",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3 :: Only",
    "Operating System :: OS Independent",
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

setup(
    name="redis_bloomfilter",
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/plain",
    classifiers=CLASSIFIERS,
    keywords=[
        "bloom filter",
        "probabilistic",
        "redis",
        "set membership",
        "scalable",
        "distributed",
    ],
    license="MIT License",
    platforms=["any"],
    python_requires=">=3.8",
    install_requires=["bitarray>=2.0.0", "redis>=4.0.0", "xxhash>=3.0.0"],
    extras_require={"test": ["pytest", "fakeredis[lua]>=2.0.0"]},
    packages=["redis_bloomfilter"],
    zip_safe=True,
)
