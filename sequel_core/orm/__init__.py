"""
This orm module contains the model-definition and query-translation layer of sequel-core.
It holds data types, model definitions, the query compiler, instances, associations,
the model handle and the registry, plus the async database connection they run on.
"""
