"""
Setup script for learnloop.

learnloop is the asynchronous backbone of a feedback-driven generation
service. It plays three roles:

1. Retrieval - few-shot examples from similar, well-received past outputs
2. Learning - quality scores and correction patterns from user feedback
3. Reliability - idempotent jobs, retries, circuit breaking, dead letters

The 'learnloop' command operates workers and the dead-letter queue.
"""

from setuptools import find_packages, setup

setup(
    name="learnloop",
    version="0.1.0",
    description="Feedback-driven RAG and job reliability pipeline",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="learnloop contributors",
    packages=find_packages(include=["learnloop", "learnloop.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
        # Vectors
        "numpy>=1.24.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "learnloop=learnloop.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    keywords="rag feedback embeddings job-queue circuit-breaker dead-letter",
)
