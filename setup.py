#!/usr/bin/env python3

from setuptools import setup
import os

# Read long description safely
long_description = "Add banned IP addresses from apiban.org to an nftables set"
if os.path.exists("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="apiban-client-nftables",
    version="1.0.0",
    description="Add banned IP addresses from apiban.org to an nftables set",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="APIBAN nftables client",
    url="https://github.com/apiban/apiban-client-nftables",
    py_modules=[
        "apiban_config",
        "apiban_errors",
        "apiban_feed",
        "apiban_nft_client",
        "apiban_sync",
        "nft_firewall",
    ],
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.25.0",
        "urllib3>=1.26.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "apiban-nft-client=apiban_nft_client:main",
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
