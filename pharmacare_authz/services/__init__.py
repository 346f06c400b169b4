# Services layer for authorization logic
