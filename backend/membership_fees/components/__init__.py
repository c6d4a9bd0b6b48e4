"""
Pure fee engine components: condition matchers, decision tree evaluator and
legacy reduction engine. None of them touch the database.
"""
