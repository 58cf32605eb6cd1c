#!/usr/bin/env python3
"""Setup script for odsync."""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="odsync",
    version="0.1.0",
    description="Bidirectional OneDrive sync engine for Linux",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.31.0",
        "watchdog>=3.0.0",
        "python-dateutil>=2.8.2",
        "send2trash>=1.8.0",
        "cryptography>=41.0.0",
        "keyring>=24.0.0",
        "certifi>=2023.7.22",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "odsync=odsync.cli:main",
            "odsync-daemon=odsync.daemon:main",
        ],
    },
)
