#
from setuptools import setup, find_namespace_packages

def get_version():
    """
    Get version number from the phylo_posterior package.

    The easiest way would be to just ``import phylo_posterior``, but note that this may
    fail if the dependencies have not been installed yet. Instead, we've put
    the version number in a simple version_info module, that we'll import here
    by temporarily adding the package directory to the pythonpath using sys.path.
    """
    import os
    import sys

    sys.path.append(os.path.abspath(os.path.join('src', 'phylo_posterior')))
    from version_info import VERSION as version
    sys.path.pop()

    return version

def get_readme():
    """
    Load README.md text for use as description.
    """
    with open('README.md') as f:
        return f.read()

setup(
    # Module name (lowercase)
    name='phylo_posterior',

    # Version
    version=get_version(),

    description='Combine replicated phylodynamic MCMC chains and summarise SEIJR epidemic trajectories.',

    long_description=get_readme(),

    long_description_content_type='text/markdown',

    license='MIT license',

    url='',

    # Packages to include (namespace packages, no __init__.py files)
    package_dir={'': 'src'},
    packages=find_namespace_packages(where='src', include=('phylo_posterior', 'phylo_posterior.*')),

    python_requires='>=3.9',

    # List of dependencies
    install_requires=[
        'numpy',
        'matplotlib',
        'pandas',
        'scipy>=1.8',
        'joblib',
    ],
    extras_require={
        'docs': [
            # Sphinx for doc generation. Version 1.7.3 has a bug:
            'sphinx>=1.5, !=1.7.3',
            # Nice theme for docs
            'sphinx_rtd_theme',
        ],
        'dev': [
            # Flake8 for code style checking
            'flake8>=3',
            'pytest',
            'pytest-cov',
        ],
    },
    entry_points={
        'console_scripts': [
            'phylo-posterior=phylo_posterior.runner:main',
        ],
    },
)
