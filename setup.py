#!/usr/bin/env python3

from setuptools import setup, find_packages

# Load the visionexport version info.
#
# Note that we cannot simply import the module, since dependencies listed
# in setup() will very likely not be installed yet when setup.py run.
#
# See:
#   https://packaging.python.org/guides/single-sourcing-package-version

__version__ = None

with open('src/visionexport/_version.py') as fp:
    exec(fp.read())

    version = __version__

# Configure setuptools

setup(
    name='visionexport',
    version=version,
    description='Balanced image-classification datasets from taxa, observations and photos',
    python_requires='>=3.9',
    tests_require=['pytest'],
    extras_require={
        'test': ['pytest'],
    },
    include_package_data=True,
    zip_safe=True,
    install_requires=[
        'duckdb>=0.10',
        'fire>=0.4.0',
        'loguru>=0.6',
        'numpy>=1.22',
        'pandas>=1.4',
        'pydantic>=2',
        'tqdm>=4.64.1',
    ],
    test_suite='tests',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    entry_points={
        'console_scripts': [
            'visionexport=visionexport.__main__:main'
        ]
    }
)
