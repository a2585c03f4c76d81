import os
from setuptools import setup


setup(name='ssltunnel',

    version = "0.1.0",
    description = ("Wrap a local HTTP service with TLS using a "
                   "self-signed certificate and a Tornado proxy"),



    packages=['ssltunnel'],

    keywords = "TLS SSL proxy https self-signed certificates",
    long_description=open(os.path.join(os.path.dirname(__file__), 'README.rst')).read(),

    install_requires=["tornado >= 6.0", "cryptography >= 42.0"],
    extras_require={"test": ["pytest"]},

    entry_points={
        "console_scripts": ["ssltunnel = ssltunnel.tunnel:main"]},

    classifiers=[
        "Development Status :: 3 - Alpha",
        "Topic :: Internet :: Proxy Servers"]
      )
