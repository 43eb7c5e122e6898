"""Nord Session Meta information.
   Nord Session manages the session key, login and account provisioning
   lifecycle of a Nord trading client.
"""
__title__ = 'nord_session'
__description__ = (
   'Nord Session manages session keys, login and account provisioning '
   'for Nord trading clients.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2024 Nord Session Authors'
__author__ = 'Nord Session Authors'
__license__ = 'Apache-2.0'
