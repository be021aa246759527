#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""The setup script."""

from setuptools import setup, find_packages

with open('README.rst') as readme_file:
    readme = readme_file.read()

with open('requirements.txt') as r:
    requirements = [line.strip() for line in r.readlines()
                    if line.strip() and not line.startswith('#')]

setup_requirements = []

test_requirements = ['pytest', ]

setup(
    name='k3sboot',
    version='0.4.0',
    description='Bootstrap an EC2 instance into a k3s server and publish '
                'its kubeconfig',
    long_description=readme,
    long_description_content_type='text/x-rst',
    license='Apache-2.0',
    packages=find_packages(include=['k3sboot', 'k3sboot.*']),
    python_requires='>=3.8',
    install_requires=requirements,
    setup_requires=setup_requirements,
    tests_require=test_requirements,
    extras_require={'test': test_requirements},
    entry_points={
        'console_scripts': [
            'k3sboot=k3sboot.k3sboot:main',
        ],
    },
    classifiers=[
        'Environment :: Console',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3',
        'Topic :: System :: Clustering',
    ],
    zip_safe=False,
)
