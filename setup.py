"""Packaging information for blobdir."""

import sys

import setuptools

from blobdir.constants import VERSION

if sys.version_info[:3] < (3, 7, 0):
    print("blobdir requires Python 3.7 to run.")
    sys.exit(1)

install_requires = [
    "httpx>=0.23.0",
    "lz4>=3.0.2",
    "fasteners>=0.15",
    "tenacity>=8.0.0",
]

extras_require = {
    "dev": [
        "flake8>=3.7.9",
        "flake8-docstrings>=1.5.0",
        "flake8-import-order>=0.18.1",
        "black>=19.10b0",
        "pylint>=2.4.4",
        "mypy>=0.770",
        "pytest>=5.4.1",
        "pytest-cov>=2.8.1",
    ]
}


def _long_description():
    with open("README.md") as f:
        return f.read()


setuptools.setup(
    name="blobdir",
    version=VERSION,
    description="Blob storage backed index directory with local caching and leases.",
    long_description=_long_description(),
    long_description_content_type="text/markdown",
    license="Apache",
    packages=setuptools.find_packages(),
    entry_points={"console_scripts": ["blobdir = blobdir.__main__:main"]},
    install_requires=install_requires,
    extras_require=extras_require,
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.7",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: POSIX",
        "Topic :: System :: Filesystems",
    ],
    python_requires=">=3.7",
)
