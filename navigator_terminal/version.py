"""Navigator Terminal Meta information.
   Navigator Terminal bridges websocket clients to remote SSH shells
   and keeps saved connections in an encrypted credential vault.
"""
__title__ = 'navigator_terminal'
__description__ = (
   'Navigator Terminal bridges websocket clients to remote SSH shells '
   'and keeps saved connections in an encrypted credential vault.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-terminal'
