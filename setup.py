"""
Setup script for Duet - Passphrase-encrypted peer-to-peer chat.

This package provides:
- Copy/paste offer/answer handshake (no signaling server)
- Session key derived from a shared passphrase (PBKDF2-HMAC-SHA256 or Argon2id)
- AES-256-GCM encryption of every message
- In-memory loopback and direct TCP transports
- A small terminal client
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='duet-chat',
    version='1.0.0',
    author='duet contributors',
    description='Passphrase-encrypted peer-to-peer chat sessions over copy/paste handshakes',
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
            'duet=duet.main:main',
        ],
    },
)
