from setuptools import setup, find_packages
from pathlib import Path

package_name = 'preview-env-operator'
description = (
    'A Kubernetes operator that provisions short-lived preview environments '
    'over an authenticated gRPC API and bootstraps the addons that route '
    'to them and expire them.'
)
author = 'Preview Environment Operator Developers'
author_email = 'dev@previewenv.io'
license = 'MIT'
url = 'https://github.com/previewenv/preview-env-operator'
pypi_classifiers = [
    'Development Status :: 4 - Beta',
    'License :: OSI Approved :: MIT License',
    'Programming Language :: Python :: 3.10',
    'Programming Language :: Python :: 3.11',
    'Programming Language :: Python :: 3.12',
]
keywords = ['kubernetes', 'operator', 'preview environments']
readme = Path(__file__).parent / 'README.rst'

# Core dependencies
install_requires = [
    'kopf>=1.37',
    'kubernetes>=29.0.0',
    'structlog>=24.1.0',
    'grpcio>=1.62',
    'acme>=2.9',
    'josepy>=1.14',
    'cryptography>=42.0',
    'prometheus-client>=0.20',
]

# Test dependencies
tests_require = [
    'pytest>=8.0',
    'PyYAML>=6.0',
]
tests_require += install_requires

# Optional dependencies (like for dev)
extras_require = {
    'test': tests_require,
    # For development environments
    'dev': tests_require,
}

# Setup-time dependencies
setup_requires = [
    'setuptools_scm',
]

setup(
    name=package_name,
    description=description,
    long_description=readme.read_text(),
    long_description_content_type='text/x-rst',
    author=author,
    author_email=author_email,
    url=url,
    license=license,
    classifiers=pypi_classifiers,
    keywords=keywords,
    python_requires='>=3.10',
    package_dir={'': 'src'},
    packages=find_packages('src', exclude=['docs', 'tests']),
    install_requires=install_requires,
    setup_requires=setup_requires,
    extras_require=extras_require,
    use_scm_version={'fallback_version': '0.1.0'},
    include_package_data=True
)
