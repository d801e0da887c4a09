from setuptools import setup, find_packages

setup(
    name='wikimirror',
    version='0.1.0',
    packages=find_packages(include=['wikimirror', 'wikimirror.*']),
    entry_points={
        'console_scripts': [
            'wikimirror=wikimirror.cli:main',
        ],
    },
    install_requires=[
        'python-dotenv',
        'pyyaml',
        'pydantic>=2',
        'requests',
        'click',
        'markdown',
        'bs4',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    author='While True Industries',
    author_email='adam@whiletrue.industries',
    description='Multi-source wiki ingestion and sync',
    python_requires='>=3.10',
)
