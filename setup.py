"""Setup script for the blood request and donation lifecycle service."""

from setuptools import setup, find_namespace_packages

setup(
    name="bloodbank-lifecycle",
    version="1.0.0",
    description="Blood request matching and donation pipeline - event-driven lifecycle service",
    author="Blood Bank Platform Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["bloodbank*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic",
        "sqlalchemy>=2.0,<2.1",
        "psycopg2-binary",
        "redis",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
            "fakeredis",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
        ],
    },
    entry_points={
        "console_scripts": [
            "bloodbank-expiry-sweeper=bloodbank.entrypoints.expiry_sweeper:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Healthcare Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
    ],
)
