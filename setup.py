"""
Package installation and setup script for Feed Relay.
"""

from setuptools import setup, find_packages
import os

# Read the README file
readme_path = os.path.join(os.path.dirname(__file__), 'README.md')
if os.path.exists(readme_path):
    with open(readme_path, 'r', encoding='utf-8') as f:
        long_description = f.read()
else:
    long_description = 'Feed Relay - relays new RSS, Atom and RDF feed items to a Telegram chat exactly once'

# Read requirements
requirements_path = os.path.join(os.path.dirname(__file__), 'requirements.txt')
if os.path.exists(requirements_path):
    with open(requirements_path, 'r', encoding='utf-8') as f:
        requirements = [line.strip() for line in f if line.strip() and not line.startswith('#')]
else:
    requirements = [
        'requests>=2.31.0',
        'feedparser>=6.0.10',
        'APScheduler>=3.10.0,<4',
        'python-dotenv>=1.0.0',
        'pytz>=2023.3',
        'python-dateutil>=2.8.2',
        'user_agent>=0.1.10',
        'SQLAlchemy>=2.0',
        'pydantic>=2.0',
    ]

test_requirements = [
    'pytest>=7.0.0',
    'pytest-cov>=4.0.0',
    'responses>=0.23.0',
]

setup(
    name='feed-relay',
    version='1.0.0',
    description='Scheduled feed poller that relays new items to a Telegram chat',
    long_description=long_description,
    long_description_content_type='text/markdown',
    author='Feed Relay Team',

    # Package discovery
    packages=find_packages(exclude=['tests*']),
    include_package_data=True,

    # Dependencies
    install_requires=requirements,

    # Optional dependencies
    extras_require={
        'dev': test_requirements + ['flake8>=5.0.0'],
        'test': test_requirements,
    },

    # Entry points
    entry_points={
        'console_scripts': [
            'feedrelay=feedrelay.main:main',
        ],
    },

    # Metadata
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Communications :: Chat',
        'Topic :: Internet :: WWW/HTTP :: Dynamic Content :: News/Diary',
        'Topic :: Text Processing :: Markup :: XML',
    ],

    # Python version requirement
    python_requires='>=3.10',

    # Keywords
    keywords='rss atom rdf feeds telegram relay bot',

    # License
    license='MIT',

    # Zip safe
    zip_safe=False,
)
