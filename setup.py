"""
Setup script for Order Settlement

Settlement core for a work-order marketplace: order lifecycle, atomic bid
acceptance, tiered worker earnings, payouts and live notifications.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Order Settlement

    Settlement core for a work-order marketplace between clients, freelance
    workers, managers and administrators: bidding, assignment, delivery,
    tiered piece-rate earnings, payouts and real-time notifications.
    """

setup(
    name="order-settlement",
    version="1.0.0",
    description="Order lifecycle, bidding, tiered earnings and payout settlement core",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Order Settlement Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Office/Business :: Financial",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="orders, bidding, payouts, earnings, settlement, async",
    packages=find_packages(include=["order_settlement", "order_settlement.*"]),
    python_requires=">=3.9",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",

        # Payment gateway client
        "httpx>=0.24.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "order-settlement=order_settlement.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "order_settlement": [
            "sql/*.sql",
        ],
    },
)
