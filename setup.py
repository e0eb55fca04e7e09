from __future__ import annotations

from pathlib import Path

from setuptools import find_packages, setup

_here = Path(__file__).resolve().parent
_readme = _here / "README.md"

setup(
    name="mashcore",
    version="0.1.0",
    description="Likelihood and posterior engines for multivariate adaptive shrinkage (mash)",
    long_description=_readme.read_text(encoding="utf-8") if _readme.is_file() else "",
    long_description_content_type="text/markdown",
    python_requires=">=3.10",
    packages=find_packages(include=["mashcore", "mashcore.*"]),
    install_requires=[
        "numpy>=1.22",
        "scipy>=1.8",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": ["mashcore=mashcore.cli:main"],
    },
)
