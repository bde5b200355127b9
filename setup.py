"""Setup script for the taskq package."""

from setuptools import setup, find_packages

setup(
    name="taskq",
    version="0.1.0",
    packages=find_packages(include=["taskq", "taskq.*"]),
    py_modules=["server"],
    python_requires=">=3.10",
    install_requires=[
        "structlog>=24.1",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "redis>=5.0.1",
        "prometheus-client>=0.19",
        "tenacity>=8.2",
        "httpx>=0.26",
        "psutil>=5.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={"console_scripts": ["taskq-worker=server:main"]},
    description="taskq - distributed task queue execution engine",
    author="taskq Team",
)
