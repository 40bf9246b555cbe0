"""Setup script for the CourierX shipment lifecycle engine."""

from setuptools import setup, find_packages

setup(
    name="courierx",
    version="1.0.0",
    description="Shipment lifecycle engine: versioned state machine, wallet ledger and carrier workers",
    author="CourierX Engineering",
    python_requires=">=3.10",
    packages=find_packages(include=["courierx", "courierx.*"]),
    include_package_data=True,
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.1.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "courierx-api=courierx.api.main:main",
            "courierx-scheduler=courierx.workers.scheduler:main",
            "courierx-outbox=courierx.workers.outbox_publisher:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
