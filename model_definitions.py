import torch.nn as nn
from torchvision import models

# Classifier architectures for .pth state-dict artifacts.
# Layer names must line up with the checkpoint keys.


class DenseNetClassifier(nn.Module):
    """
    DenseNet-121 classifier.
    Same topology as the ONNX Model Zoo DenseNet, 1000 ImageNet outputs by default.
    """
    input_name = "data_0"
    head_key = "model.classifier.weight"

    def __init__(self, num_classes=1000):
        super().__init__()
        self.model = models.densenet121(weights=None)  # We load our own weights
        if num_classes != self.model.classifier.out_features:
            self.model.classifier = nn.Linear(self.model.classifier.in_features, num_classes)
        self.num_classes = num_classes

    def forward(self, x):
        return self.model(x)


class ResNetClassifier(nn.Module):
    """ResNet-18 classifier."""
    input_name = "data_0"
    head_key = "model.fc.weight"

    def __init__(self, num_classes=1000):
        super().__init__()
        self.model = models.resnet18(weights=None)
        if num_classes != self.model.fc.out_features:
            self.model.fc = nn.Linear(self.model.fc.in_features, num_classes)
        self.num_classes = num_classes

    def forward(self, x):
        return self.model(x)


ARCHITECTURES = {
    "densenet121": DenseNetClassifier,
    "resnet18": ResNetClassifier,
}


def build_from_state_dict(arch, state_dict):
    """Instantiate `arch` with the head size found in the weights and load them."""
    model_class = ARCHITECTURES[arch]
    # Plain torchvision checkpoints lack the wrapper prefix
    if not any(key.startswith("model.") for key in state_dict):
        state_dict = {f"model.{key}": value for key, value in state_dict.items()}
    num_classes = state_dict[model_class.head_key].shape[0]
    model = model_class(num_classes=num_classes)
    model.load_state_dict(state_dict)
    model.eval()
    return model
