"""
Volleyball Spike Speed & Form Analysis
======================================

A computer vision pipeline that measures the speed of a spiked
volleyball and scores the hitting arm from a single short clip.

Modules:
    - image_processing: Frame validation, grayscale, Sobel edges
    - ball_detection: Circular Hough ball detector + calibration radius
    - optical_flow: Lucas-Kanade point tracker
    - calibration: Pixel-to-metre scale from the ball size
    - speed_estimation: Trajectory fusion, speed and confidence
    - pose_estimation: YOLOv8-pose keypoints with a time limit
    - pose_scoring: Wrist snap, arm extension, contact point scores
    - pipeline: End-to-end integrated pipeline
"""

__version__ = "1.0.0"
