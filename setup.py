from setuptools import setup, find_packages

setup(
    name='nodeforge',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    package_data={
        'nodeforge.cri': ['templates/*.j2'],
        'nodeforge.cni': ['templates/calico/*.j2'],
    },
    install_requires=[
        'typer[all]',
        'pydantic>=2',
        'pyyaml',
        'jinja2',
        'tomli-w',
        'kubernetes',
        'python-dotenv',
        'requests'
    ],
    extras_require={
        'test': [
            'pytest',
            'jsonschema',
        ]
    },
    entry_points={
        'console_scripts': [
            'nodeforge=nodeforge.cli:app'
        ]
    },
    description='Container runtime and CNI provisioning steps for Kubernetes cluster nodes',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.11',
)
