"""
Permission set feature module.

Table-level CRUD grants and column-level view/edit grants, bundled into
permission sets that are assigned to profiles and users.
"""
