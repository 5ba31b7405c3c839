import os
import sys

from setuptools import setup

# Don't import the localflags module here, since deps may not be installed
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "localflags"))
from version import VERSION  # noqa: E402

long_description = """
localflags evaluates feature flags locally from polled flag definitions,
with consistent hash bucketing shared with the remote evaluation service
and automatic fallback to remote evaluation when a flag can't be decided.

This package requires Python 3.9 or higher.
"""

install_requires = [
    "aiohttp>=3.8",
    "python-dateutil>=2.2",
    "backoff>=1.10.0",
    "distro>=1.5.0",
    "typing_extensions>=4.2.0",
]

extras_require = {
    "test": [
        "pytest",
        "mock>=4.0",
        "freezegun>=1.5.1",
        "parameterized>=0.8.1",
    ],
}

setup(
    name="localflags",
    version=VERSION,
    url="https://github.com/posthog/posthog-python",
    author="Posthog",
    author_email="hey@posthog.com",
    maintainer="PostHog",
    maintainer_email="hey@posthog.com",
    license="MIT License",
    description="Local feature flag evaluation with remote fallback.",
    long_description=long_description,
    packages=["localflags", "localflags.test"],
    python_requires=">=3.9",
    install_requires=install_requires,
    extras_require=extras_require,
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
