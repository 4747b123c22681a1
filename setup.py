from setuptools import setup, find_packages

setup(
    name='indexkit',
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=[
        'python-consul>=1.1.0',
        'requests>=2.31.0',
        'urllib3>=2.0.0',
        'fastapi>=0.110.0',
        'uvicorn>=0.27.0',
        'pydantic>=2.5.0',
        'pyyaml>=6.0',
        'python-jose[cryptography]>=3.3.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'httpx>=0.25.0',
            'cryptography>=41.0.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'indexkit=indexkit.bootstrap:bootstrap_service',
        ],
    },
    python_requires='>=3.9',
)
