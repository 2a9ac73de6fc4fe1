"""
Setup script for tilesparse.

The Triton kernels are compiled at first launch, so no extension modules are
built here.
"""

from setuptools import setup, find_packages
import os

setup(
    name='tilesparse',
    version='0.1.0',
    author='tilesparse Team',
    description='Block-sparse matrix conversion and scheduled multiply on tile MMA units',
    long_description=open('README.md').read() if os.path.exists('README.md') else '',
    long_description_content_type='text/markdown',
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    python_requires='>=3.10',
    install_requires=[
        'torch>=2.0.0',
        'numpy>=1.21.0',
        'triton>=2.0.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'tilesparse=tilesparse.cli:main',
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Mathematics',
        'Topic :: Software Development :: Libraries :: Python Modules',
    ],
    zip_safe=False,
)
