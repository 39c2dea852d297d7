"""
Learning — turns approvals, rejections and corrections into rules.

Modules:
- models.py: Rule, Correction and pipeline result types
- store.py: SQLite persistence for rules, corrections and graduation state
- classifier.py: category inference, correction detection, text similarity
- pipeline.py: LearningPipeline (feedback, patterns, decay, error learning)
- graduation.py: GraduationTracker (autonomy tier proposals)

Feature Flag: FEATURE_LEARNING (default: true)
"""
