"""Setup configuration for batchload package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = (
    readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""
)

setup(
    name="batchload",
    version="0.1.0",
    description="Batched, watermark-driven incremental loads between Ibis backends",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "docs", "docs.*"]),
    python_requires=">=3.9",
    install_requires=[
        "ibis-framework[duckdb]>=9.0.0",
        "sqlglot<30",  # sqlglot 30 breaks ibis' DuckDB DDL generation
        "pandas>=1.5.0",
        "pyarrow>=10.0.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0",
        "structlog>=23.1.0",
        "tenacity>=8.0.0",  # For retry logic
    ],
    extras_require={
        "postgres": ["ibis-framework[postgres]>=9.0.0"],
        "mssql": ["ibis-framework[mssql]>=9.0.0"],  # pulls in pyodbc
        "mysql": ["ibis-framework[mysql]>=9.0.0"],
        "sqlite": ["ibis-framework[sqlite]>=9.0.0"],
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=0.990",
        ],
    },
    entry_points={
        "console_scripts": [
            "batchload=batchload.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Database",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="data-engineering incremental-load watermark etl ibis",
)
