from setuptools import setup
import sys

Version = "1.0"

if sys.version_info[:2] < (3, 8):
    sys.stderr.write("Your Python version %d.%d.%d is not supported.\n" % sys.version_info[:3])
    sys.stderr.write("cloudexec requires Python 3.8 or newer.\n")
    sys.exit(1)

install_requires = [
        "apache-libcloud >= 3.0",
        "simplejson >= 3.0",
        ]

tests_require = install_requires + [
        'mock',
        'pytest',
        ]

setup(name='cloudexec',
      version=Version,
      description='Retrying, connection pooled command execution for cloud APIs.',
      author='Nimbus Development Team',
      author_email='nimbus@mcs.anl.gov',
      url='http://www.nimbusproject.org/',
      packages=[ 'cloudexec', 'cloudexec.cli', 'cloudexec.nosetests' ],
       entry_points = {
        'console_scripts': [
            'cloudexec = cloudexec.cli.main:main',
        ],

      },
      include_package_data = True,
      package_data = {},
      keywords = "cloud http retry backoff connection pool",
      long_description="""
The plumbing underneath a cloud API client.

Provider bindings turn calls into HTTP requests; this library sends them.  Commands are queued to an
executor that keeps a pool of connections per endpoint, follows redirects (including the vendor style
redirects that name a new endpoint in the error body), retries server errors and known transient vendor
errors with a bounded backoff, and hands each response to a transformer on a thread pool.  A retry
engine polls asynchronous cloud operations ("until this VM is running", "until port 22 answers") with
growing delays, bounded by time or by attempts.
""",
      license="Apache2",
      python_requires=">=3.8",
      install_requires = install_requires,
      tests_require=tests_require,
      extras_require={
          'test': tests_require,
      },
      classifiers=[
          'Development Status :: 4 - Beta',
          'Environment :: Console',
          'Intended Audience :: Developers',
          'Intended Audience :: System Administrators',
          'License :: OSI Approved :: Apache Software License',
          'Operating System :: MacOS :: MacOS X',
          'Operating System :: POSIX',
          'Operating System :: POSIX :: Linux',
          'Programming Language :: Python',
          'Programming Language :: Python :: 3',
          'Topic :: System :: Distributed Computing',
          'Topic :: Internet :: WWW/HTTP',
          ],
     )
