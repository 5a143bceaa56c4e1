"""
Exam Desk core services

attempts   - attempt lifecycle: start / resume, auto-save, submit and scoring
integrity  - integrity events, violation counting, risk reports
results    - ranking and per-question analytics over submitted attempts
billing    - publish quota and Pro subscriptions
folders    - question bank folder tree
question_bank - reusable question copies
"""
