"""Setup script for the payout core."""

from setuptools import setup, find_packages

setup(
    name="payout-core",
    version="0.1.0",
    description="Money core for creator platforms: routing, trust scoring, refunds, disputes and settlement",
    python_requires=">=3.10",
    packages=find_packages(include=["payout_core", "payout_core.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.21.1",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "payout-core-api=payout_core.api.main:main",
            "payout-core-sweeper=payout_core.workers.reconciliation_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
