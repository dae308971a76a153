"""
Constants
Fixed policy numbers for fix viability, lesson confidence and scoring.
"""
# Fix viability
MIN_VIABLE_FIX_CONFIDENCE = 0.5
VERIFICATION_CONFIDENCE = 0.7
MAX_CONSECUTIVE_SKIPS = 3
ESTIMATED_TOKENS_PER_FIX = 5000

# Lesson confidence bounds
LESSON_INITIAL_CONFIDENCE = 0.5
LESSON_LEARNED_CONFIDENCE = 0.6
LESSON_CONFIDENCE_FLOOR = 0.1
LESSON_CONFIDENCE_CEILING = 0.95
LESSON_SUCCESS_STEP = 0.05
LESSON_FAILURE_STEP = 0.1

# Lesson decay
DECAY_BUCKET_DAYS = 30
DECAY_RATE = 0.01

# Lesson store document
LESSON_STORE_VERSION = "1.0"

# Improvement suggestions shown per scoring call
MAX_SUGGESTIONS = 5
