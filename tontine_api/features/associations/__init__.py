"""
Association management feature module.

Creating associations, joining them and validating membership requests.
"""
