from setuptools import setup, find_packages

setup(
    name='notionsync',
    version='0.1.0',
    packages=find_packages(),
    entry_points={
        'console_scripts': [
            'notionsync=notionsync.cli:main',
        ],
    },
    install_requires=[
        'python-dotenv',
        'pydantic>=2',
        'pyyaml',
        'requests',
        'click',
    ],
    extras_require={
        'test': ['pytest'],
    },
    author='While True Industries',
    author_email='adam@whiletrue.industries',
    description='Workspace to content store synchronization core',
    python_requires='>=3.10',
)
