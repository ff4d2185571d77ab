#!/usr/bin/env python3

from setuptools import setup
import os

# Read long description safely
long_description = "nftables IP blacklist manager fed by threat intelligence sources"
if os.path.exists("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="nft-ip-blacklist-manager",
    version="1.0.0",
    description="nftables IP blacklist manager fed by threat intelligence sources",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="IP Blacklist Manager",
    py_modules=[
        "blacklist_common",
        "blacklist_nft",
        "update_blacklists",
        "blacklist_helper",
    ],
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.25.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "update-blacklists=update_blacklists:main",
            "blacklist=blacklist_helper:main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Networking :: Firewalls",
        "Topic :: Security",
    ],
)
