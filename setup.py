#!/usr/bin/env python

import os
import re
from setuptools import setup

version_file = os.path.join('upload_customs', '_version.py')
with open(version_file, 'rb') as f:
    version_data = f.read().strip().decode('ascii')

version_re = re.compile(r'((?:\d+)\.(?:\d+)\.(?:\d+))')
version = version_re.search(version_data).group(0)

install_requires = [
    'python-multipart>=0.0.13',
]

tests_require = [
    'pytest',
    'pytest-cov',
    'pytest-timeout',
    'PyYAML',
]

setup(name='upload-customs',
      version=version,
      description='Normalizes $_FILES-shaped upload descriptors into typed uploads',
      license='Apache',
      platforms='any',
      zip_safe=False,
      install_requires=install_requires,
      extras_require={
          'test': tests_require,
          'dev': tests_require + ['invoke', 'nox'],
      },
      packages=[
          'upload_customs',
      ],
      python_requires='>=3.9',
      classifiers=[
        'Development Status :: 5 - Production/Stable',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Software Development :: Libraries :: Python Modules'
      ],
     )
