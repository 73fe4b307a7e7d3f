"""Setup configuration for Hitcastor Snapshotter."""

from setuptools import find_packages, setup

setup(
    name="hitcastor-snapshotter",
    version="1.0.0",
    description="Daily tamper-evident Spotify chart snapshots for Hitcastor settlement",
    author="Hitcastor",
    python_requires=">=3.11",
    packages=find_packages(where="src", include=["snapshotter*"]),
    package_dir={"": "src"},
    install_requires=[
        "httpx>=0.27.0",
        "pandas>=2.2.0",
        "pydantic>=2.6.0",
        "pydantic-settings>=2.1.0",
        "boto3>=1.34.0",
        "psycopg2-binary>=2.9.9",
        "apscheduler>=3.10.4,<4.0",
    ],
    entry_points={
        "console_scripts": [
            "snapshotter=snapshotter.cli:cli_entry",
        ],
    },
    extras_require={
        "dev": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "respx>=0.21.0",
        ],
    },
)
