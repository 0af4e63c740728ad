import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name='socksagent',
    version='1.0',
    author="acuifex",
    author_email="proxychains@acuifex.ru",
    description="Tunnel urllib3 HTTP(S) requests through chained SOCKS proxies.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/acuifex/proxychains",
    packages=["socksagent"],
    python_requires=">=3.10",
    install_requires=[
        'urllib3>=2',
    ],
    extras_require={
        'test': [
            'pytest',
            'cryptography',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3.10",
        "License :: OSI Approved :: GNU Affero General Public License v3 or later (AGPLv3+)",
        "Operating System :: OS Independent",
    ],
 )
