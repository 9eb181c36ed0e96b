"""Setup script for her2seq."""

from pathlib import Path
from setuptools import setup, find_packages

# Read the contents of README.md
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

# Read version from version.py
version_file = this_directory / "her2seq" / "version.py"
version_dict = {}
with open(version_file) as f:
    exec(f.read(), version_dict)
version = version_dict["__version__"]

# Core requirements
install_requires = [
    # Core
    "pandas>=1.5.0",
    "numpy>=1.23.0",
    "plotly>=5.0.0",
    "rich>=12.0.0",
    "typer>=0.7.0",
    "python-dotenv>=1.0.0",

    # Statistics
    "scipy>=1.11.0",
    "scikit-learn>=1.3.0",

    # Data containers
    "anndata>=0.9.0",
    "h5py>=3.9.0",

    # Visualization
    "kaleido>=0.2.0",

    # Notebook export
    "jinja2>=3.1.0",
    "nbformat>=5.9.0",

    # HTTP
    "requests>=2.31.0",
]

# R bridge for edgeR and limma (needs R with the Bioconductor packages)
r_requires = [
    "rpy2>=3.5.0",
]

# Development requirements
dev_requires = [
    "pytest>=7.0.0",
    "pytest-cov>=4.0.0",
    "pytest-mock>=3.10.0",
    "responses>=0.23.0",
    "factory-boy>=3.3.0",
    "faker>=18.0.0",
    "black>=23.0.0",
    "isort>=5.12.0",
    "flake8>=6.0.0",
    "mypy>=1.0.0",
]

setup(
    name="her2seq",
    version=version,
    author="her2seq contributors",
    description="HER2-stratified RNA-seq differential expression for TCGA breast cancer",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "docs", "docs.*"]),
    include_package_data=True,
    install_requires=install_requires,
    extras_require={
        "r": r_requires,
        "dev": dev_requires,
        "all": install_requires + r_requires + dev_requires,
    },
    entry_points={
        "console_scripts": [
            "her2seq=her2seq.cli:app",
        ],
    },
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "Environment :: Console",
    ],
    keywords="bioinformatics, RNA-seq, TCGA, HER2, breast cancer, limma, voom",
)
