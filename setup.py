#!/usr/bin/env python

# Setup script for the `dropbear-unlock' package.
#
# Author: Peter Odding <peter@peterodding.com>
# Last Change: October 19, 2026

"""
Setup script for the `dropbear-unlock` package.

**python setup.py install**
  Install from the working directory into the current Python environment.

**python setup.py sdist**
  Build a source distribution archive.

**python setup.py bdist_wheel**
  Build a wheel distribution archive.
"""

# Standard library modules.
import codecs
import os
import re

# De-facto standard solution for Python packaging.
from setuptools import find_packages, setup


def get_contents(*args):
    """Get the contents of a file relative to the source distribution directory."""
    with codecs.open(get_absolute_path(*args), 'r', 'UTF-8') as handle:
        return handle.read()


def get_version(*args):
    """Extract the version number from a Python module."""
    contents = get_contents(*args)
    metadata = dict(re.findall('__([a-z]+)__ = [\'"]([^\'"]+)', contents))
    return metadata['version']


def get_requirements(*args):
    """Get requirements from pip requirement files."""
    requirements = set()
    contents = get_contents(*args)
    for line in contents.splitlines():
        # Strip comments.
        line = re.sub(r'^#.*|\s#.*', '', line)
        # Ignore empty lines
        if line and not line.isspace():
            requirements.add(re.sub(r'\s+', '', line))
    return sorted(requirements)


def get_absolute_path(*args):
    """Transform relative pathnames into absolute pathnames."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), *args)


setup(name='dropbear-unlock',
      version=get_version('dropbear_unlock', '__init__.py'),
      description="Unlock remote root disk encryption over Dropbear SSH",
      long_description=get_contents('README.rst'),
      author="Peter Odding",
      author_email='peter@peterodding.com',
      license='MIT',
      packages=find_packages(exclude=['tests']),
      entry_points=dict(console_scripts=[
          'dropbear-unlock = dropbear_unlock.cli:main',
      ]),
      install_requires=get_requirements('requirements.txt'),
      extras_require=dict(tests=get_requirements('requirements-tests.txt')),
      python_requires='>=3.7',
      classifiers=[
          'Development Status :: 3 - Alpha',
          'Environment :: Console',
          'Intended Audience :: Information Technology',
          'Intended Audience :: System Administrators',
          'License :: OSI Approved :: MIT License',
          'Natural Language :: English',
          'Operating System :: POSIX',
          'Operating System :: POSIX :: Linux',
          'Programming Language :: Python',
          'Programming Language :: Python :: 3',
          'Programming Language :: Python :: Implementation :: CPython',
          'Topic :: Security :: Cryptography',
          'Topic :: System :: Boot',
          'Topic :: System :: Systems Administration',
          'Topic :: Utilities',
      ])
