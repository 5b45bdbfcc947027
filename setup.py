"""
Setup script for Shade - ephemeral end-to-end encrypted messaging relay.

This package provides:
- A relay server for direct messages with presence-aware delivery
- Client-side P-256 ECDH key agreement and AES-256-GCM payloads
- Messages that expire after 48 hours unless explicitly saved
- Call signaling for peer-to-peer audio/video
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
readme_path = os.path.join(this_directory, 'README.md')
long_description = ''
if os.path.exists(readme_path):
    with open(readme_path, encoding='utf-8') as f:
        long_description = f.read()

setup(
    name='shade-messenger',
    version='1.0.0',
    description='An ephemeral end-to-end encrypted messaging relay with call signaling',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.10',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'aiofiles>=23.2.1',
        'rich>=13.7.0',
        'tomli>=2.0.1; python_version < "3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'shade-server=shade.server:main',
        ],
    },
)
