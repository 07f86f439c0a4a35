"""
                        Services Module

Outbound integrations, each with a Mock (development) and a Real
(production) implementation selected by ENV_MODE.

Services:
    - backend: restaurant REST API client
    - notifications: audible and logged staff alerts
"""
