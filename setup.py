from setuptools import setup, find_packages

setup(
    name='ocnectl',
    version='0.1.0',
    packages=find_packages(exclude=['ocnectl.tests', 'ocnectl.tests.*']),
    include_package_data=True,
    package_data={
        'ocnectl': [
            'templates/*.j2',
            'templates/*/*.j2',
            'templates/*/*.service',
            'templates/*/*.sh',
            'templates/scripts/*/*',
        ],
    },
    install_requires=[
        'typer[all]',
        'kubernetes',
        'python-dotenv',
        'requests',
        'pyyaml',
        'pydantic>=2',
        'jinja2',
        'jsonschema',
        'rich',
        'cryptography',
        'oci',
        'libvirt-python',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'ocnectl=ocnectl.cli:run'
        ]
    },
    description='Kubernetes cluster lifecycle CLI for libvirt, OCI Cluster API and existing clusters',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
