#!/usr/bin/env python3
import re
from pathlib import Path

from setuptools import setup, find_packages

HERE = Path(__file__).parent

version = re.search(
    r'^__version__ = "([^"]+)"',
    (HERE / "pid_tune_analysis" / "__init__.py").read_text(),
    re.M,
).group(1)

setup(
    name="orangebox-tune-analysis",
    version=version,
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy>=1.20.0",
        "scipy>=1.8.0",
        "orangebox",
    ],
    extras_require={
        "plotting": ["matplotlib>=3.3.0"],
        "dev": ["pytest>=6.0.0"],
    },
    description="Blackbox log analysis for PID and filter tuning: noise spectra, "
                "transfer functions, step responses and Bayesian gain suggestions",
    long_description=(HERE / "README.md").read_text(),
    long_description_content_type="text/markdown",
    keywords="blackbox cleanflight betaflight pid step-response tuning fft bayesian",
    classifiers=[
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Information Analysis",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
    ],
    python_requires=">=3.8"
)
