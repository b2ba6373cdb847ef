"""
Setup script for pathforge.

Pathforge turns a learner's uploaded study materials into an evidence-grounded
learning path. It runs as a sequence of content-build stages:

1. Concept graph - canonical concepts, typed edges, cross-path canonicalization
2. Clusters & knowledge graph - concept clusters, material entities and claims
3. Path plan - hierarchical modules and lessons with teaching patterns
4. Node docs - validated, citation-checked lesson documents

The 'pathforge' command is the operator entry point.
"""

from setuptools import find_packages, setup

setup(
    name="pathforge",
    version="1.0.0",
    description="Evidence-grounded learning path content pipeline",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="Right Learning",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy>=2.0.0,<2.1",
        "psycopg2-binary>=2.9.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP (vector store, graph store)
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
        # AI & Embeddings
        "google-generativeai>=0.3.0",
        "google-api-core>=2.0.0",
        "sentence-transformers>=2.2.0",
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
    },
    entry_points={
        "console_scripts": [
            "pathforge=src.cli.main:run",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="learning content-pipeline rag education knowledge-graph",
)
