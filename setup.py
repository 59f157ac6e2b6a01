from setuptools import setup, find_packages

setup(
    name='docjobs',
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    install_requires=[
        'fastapi>=0.110',
        'uvicorn>=0.29',
        'pydantic>=2.5',
        'pydantic-settings>=2.1',
        'python-dotenv>=1.0',
        'databases[aiosqlite]>=0.9',
        'SQLAlchemy>=2.0',
        'redis>=5.0.1',
        'httpx>=0.27',
        'beautifulsoup4>=4.12',
    ],
    extras_require={
        'test': [
            'pytest>=8.0',
            'pytest-asyncio>=0.23',
        ],
    },
    entry_points={
        'console_scripts': [
            'docjobs-api=docjobs.main:run',
            'docjobs-worker=docjobs.workers.batch_worker:run_worker',
        ],
    },
    description='Batch ingestion jobs with admission control and one supervised worker process per batch.',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: POSIX',
    ],
    python_requires='>=3.10',
)
