from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="fee-ledger",
    version="1.0.0",
    description="School fee invoice ledger: invoices, payments and installment plans",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=[
        'app',
        'app_models',
        'config',
        'errors',
        'fee_api',
        'forms',
        'health',
        'ledger',
        'ledger_store',
        'security',
        'wsgi',
    ],
    include_package_data=True,
    install_requires=[
        'Flask>=3.0,<4',
        'click>=8.1',
        'Flask-SQLAlchemy>=3.1,<4',
        'Flask-WTF>=1.2,<2',
        'python-dotenv>=1.0',
        'SQLAlchemy>=2.0.43,<2.1',
        'WTForms>=3.1,<4',
        'Werkzeug>=3.0,<4',
        'gunicorn>=21.2',
        'psycopg2-binary>=2.9.9',
        'python-dateutil>=2.8',
    ],
    extras_require={
        'test': [
            'pytest>=7.4',
        ],
    },
    python_requires='>=3.9',
    classifiers=[
        "Programming Language :: Python :: 3",
        "Framework :: Flask",
        "Operating System :: OS Independent",
    ],
    entry_points={
        'console_scripts': [
            'fee-ledger=wsgi:main',
        ],
    },
)
