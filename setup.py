#!/usr/bin/env python3
"""
Setup script for Parley - hands-free voice conversation engine
"""
from setuptools import setup, find_packages
import os
import re

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()


# Read version from the package
def get_version():
    try:
        with open(os.path.join(this_directory, 'src', 'parley', '__init__.py'), 'r') as f:
            version_match = re.search(r'__version__ = "([^"]+)"', f.read())
            if version_match:
                return version_match.group(1)
    except FileNotFoundError:
        pass
    return "0.1.0"


setup(
    name="parley",
    version=get_version(),
    author="Parley Team",
    description="Hands-free voice conversation engine with turn detection and barge-in",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    package_dir={"": "src"},
    include_package_data=True,
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Sound/Audio :: Speech",
    ],
    keywords="voice vad turn-taking barge-in websocket audio streaming",
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.21.0",
        "sounddevice>=0.4.0",
        "soundfile>=0.10.0",
        "PyYAML>=6.0",
        "requests>=2.25.0",
        "websockets>=13.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "parley=parley.cli:main",
        ],
    },
)
