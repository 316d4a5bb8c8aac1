# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Latentloop — Diffusion Sampling Core                                ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
Latentloop build configuration.

Pure-Python package; the repository root *is* the ``latentloop`` package
and ``diffusion/`` is mapped to ``latentloop.diffusion``.

Build
-----
    pip install -e .                          # editable install
    pip install -e .[dev]                     # with test dependencies
    python -m build                           # sdist + wheel
"""
import os

from setuptools import setup

# ── Package metadata ──
_readme = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'README.md')
try:
    with open(_readme, 'r', encoding='utf-8') as fh:
        long_description = fh.read()
except FileNotFoundError:
    long_description = ''

setup(
    name='latentloop',
    version='0.1.0',
    author='Pictofeed, LLC',
    author_email='engineering@pictofeed.io',
    description=(
        'Noise schedules, solvers and the denoising loop of latent '
        'diffusion sampling — NumPy'
    ),
    long_description=long_description,
    long_description_content_type='text/markdown',
    url='https://github.com/pictofeed/latentloop',
    license='Proprietary',

    package_dir={
        'latentloop': '.',
        'latentloop.diffusion': 'diffusion',
    },
    packages=[
        'latentloop',
        'latentloop.diffusion',
    ],

    python_requires='>=3.10',
    install_requires=[
        'numpy>=1.24',
        'loguru>=0.7',
        'tqdm>=4.66',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0',
        ],
    },

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'License :: Other/Proprietary License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Artificial Intelligence',
    ],
    zip_safe=False,
)
