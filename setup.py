"""
dbbak
-----

dbbak backs up and restores PostgreSQL, MySQL and MariaDB databases: single
databases, whole clusters, data directory incrementals, and PostgreSQL
point-in-time recovery from archived WAL.
"""

import os.path
import pathlib
import sys

from setuptools import setup
from setuptools.command.build_py import build_py

with open('.version') as fh:
    __version__ = fh.readline().rstrip().replace('~', '')

# Set our "build-time" constants, which will be available in dbbak.const when
# dbbak is built.
_const_dict = {}
_const_dict['PREFIX'] = os.environ.get('PREFIX', '/opt/dbbak')
_const_dict['SYSCONFDIR'] = os.environ.get('SYSCONFDIR',
                                           os.path.join(_const_dict['PREFIX'],
                                                        'etc'))
_const_dict['LOCALSTATEDIR'] = os.environ.get('LOCALSTATEDIR',
                                              os.path.join(_const_dict['PREFIX'],
                                                           'var'))
_const_dict['LOCKDIR'] = os.environ.get('LOCKDIR',
                                        os.path.join(_const_dict['LOCALSTATEDIR'],
                                                     'lock'))
_const_dict['VERSION'] = __version__
_const_dict['CONF_DIR'] = os.path.join(_const_dict['SYSCONFDIR'], 'dbbak')
_const_dict['STORAGE_DIR'] = os.path.join(_const_dict['LOCALSTATEDIR'],
                                          'lib', 'dbbak')

def _consts_code():
    code = [
        'consts = %r' % _const_dict,
        '',
        "# Set dbbak.const.VERSION to consts['VERSION'], etc",
        'globals().update(consts)'
    ]
    return ''.join(line+'\n' for line in code)

def _gen_const_py():
    # Path to top-level 'dbbak' dir.
    topdir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'dbbak')

    # Generate const.py by appending our const dict to const.py.in. Write to
    # const.py.tmp, and rename() it to const.py when we're done.

    const_py = os.path.join(topdir, 'const.py')
    const_py_in = os.path.join(topdir, 'const.py.in')
    const_py_tmp = os.path.join(topdir, 'const.py.tmp')
    print("generating %s" % const_py, file=sys.stderr)

    with open(const_py_in) as in_fh:
        in_data = in_fh.read()

    with open(const_py_tmp, 'w') as tmp_fh:
        tmp_fh.write(in_data)
        tmp_fh.write(_consts_code())

    os.rename(const_py_tmp, const_py)

# Subclass the 'build_py' command to run a few extra things at build time.
class dbbak_build_py(build_py):
    def run(self):
        # Generate dbbak/const.py
        _gen_const_py()

        super().run()

topdir = pathlib.Path(__file__).parent
readme_path = topdir / "README.md"
readme_contents = readme_path.read_text()

setup(
    name='dbbak',
    version=__version__,
    license='ISC',
    description='Backup and restore for PostgreSQL, MySQL and MariaDB',
    long_description=readme_contents,
    long_description_content_type='text/markdown',
    python_requires='>=3.9',
    install_requires=[
        'PyYAML>=5.1',
        'SQLAlchemy>=1.4',
        'python_dateutil',
        'cryptography>=3.1',
        'boto3',
        'botocore',
    ],
    extras_require={
        'test': ['pytest>=6'],
    },
    cmdclass={
        'build_py': dbbak_build_py,
    },
    packages=['dbbak', 'dbbak.scripts'],
    entry_points={
        # Entry points for our CLI commands
        'console_scripts': [
            'dbbak = dbbak.scripts.dbbak:main',
        ],
    },
    # Include non-*.py files in our 'dbbak' subdir (e.g. log_cli.conf)
    package_data={'dbbak': [
        'const.py.in',
        'log_cli.conf',
        'log_daemon.conf',
    ]},
)
